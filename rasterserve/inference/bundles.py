# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

"""Configuration values of a serving pass: sources, constants and outputs.

All of these are built once during setup and are read-only while tiles are
streamed."""

__all__ = [
    'InferenceMode', 'SourceBundle', 'ConstantPlaceholder', 'OutputSpec',
    'parse_placeholder', 'check_unique_placeholders',
]

import re
from dataclasses import dataclass
from enum import Enum
from typing import Sequence, Tuple, Union

from rasterserve.data.sources import RasterSource
from rasterserve.exceptions import (
    ConfigurationError, DuplicatePlaceholderError, ExpressionSyntaxError
)


class InferenceMode(Enum):
    PATCH = 'patch'
    FULLY_CONVOLUTIONAL = 'fullyconv'


@dataclass(frozen=True)
class SourceBundle:
    """One input source: a (stacked) raster, the size of the patches that
    are sampled from it and the name of the graph input they are fed to."""
    image: RasterSource
    patch_size: Tuple[int, int]  # (width, height) in source pixels
    placeholder: str

    def __post_init__(self):
        if len(self.patch_size) != 2 or min(self.patch_size) < 1:
            raise ConfigurationError(
                f'Patch size of source "{self.placeholder}" has to be two positive '
                f'integers, got {self.patch_size}.'
            )
        if not self.placeholder:
            raise ConfigurationError('Placeholder names must not be empty.')
        object.__setattr__(self, 'patch_size', tuple(int(s) for s in self.patch_size))


@dataclass(frozen=True)
class ConstantPlaceholder:
    """Scalar graph input whose value is identical for every tile."""
    name: str
    value: Union[int, float, bool]

    @property
    def dtype(self) -> type:
        return type(self.value)


@dataclass(frozen=True)
class OutputSpec:
    names: Tuple[str, ...]  # Order of names defines the output band order
    spacing_scale: float = 1.0
    foe: Tuple[int, int] = (1, 1)  # (x, y) output pixels produced by one patch
    fully_convolutional: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'names', tuple(self.names))
        object.__setattr__(self, 'foe', tuple(int(f) for f in self.foe))
        if len(self.names) == 0:
            raise ConfigurationError('At least one output tensor name is required.')
        if len(set(self.names)) != len(self.names):
            raise ConfigurationError(f'Output tensor names must be unique, got {self.names}.')
        if not self.spacing_scale > 0:
            raise ConfigurationError(f'spacing_scale must be > 0, got {self.spacing_scale}.')
        if len(self.foe) != 2 or min(self.foe) < 1:
            raise ConfigurationError(f'FOE size has to be two integers >= 1, got {self.foe}.')

    @property
    def mode(self) -> InferenceMode:
        if self.fully_convolutional:
            return InferenceMode.FULLY_CONVOLUTIONAL
        return InferenceMode.PATCH


_INT_RE = re.compile(r'^[+-]?\d+$')
_FLOAT_RE = re.compile(r'^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$')
_NAME_RE = re.compile(r'^[A-Za-z_][\w:/.]*$')


def parse_placeholder(expression: str) -> ConstantPlaceholder:
    """Parse a user placeholder expression like ``"dropout=0.5"``.

    Supported values are booleans (``true``/``false``, case-insensitive),
    integers and floats. Examples:

    >>> parse_placeholder('is_training=false')
    ConstantPlaceholder(name='is_training', value=False)
    >>> parse_placeholder('n=3').value
    3
    """
    name, sep, value = expression.partition('=')
    name, value = name.strip(), value.strip()
    if not sep or not name or not value:
        raise ExpressionSyntaxError(f'Expected an expression of the form "name=value", got "{expression}".')
    if not _NAME_RE.match(name):
        raise ExpressionSyntaxError(f'Invalid placeholder name "{name}" in "{expression}".')
    if value.lower() in ('true', 'false'):
        return ConstantPlaceholder(name, value.lower() == 'true')
    if _INT_RE.match(value):
        return ConstantPlaceholder(name, int(value))
    if _FLOAT_RE.match(value):
        return ConstantPlaceholder(name, float(value))
    raise ExpressionSyntaxError(
        f'Can\'t parse value "{value}" of placeholder "{name}". Supported types: int, float, bool.'
    )


def check_unique_placeholders(
        bundles: Sequence[SourceBundle],
        constants: Sequence[ConstantPlaceholder] = ()
) -> None:
    """Every graph input may only be bound once."""
    seen = {}
    for i, bundle in enumerate(bundles):
        if bundle.placeholder in seen:
            raise DuplicatePlaceholderError(
                f'Placeholder "{bundle.placeholder}" is used by {seen[bundle.placeholder]} and by source {i}.',
                source=i
            )
        seen[bundle.placeholder] = f'source {i}'
    for const in constants:
        if const.name in seen:
            raise DuplicatePlaceholderError(
                f'User placeholder "{const.name}" is already bound to {seen[const.name]}.'
            )
        seen[const.name] = 'a user placeholder'
