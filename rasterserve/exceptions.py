# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

"""Exceptions raised by rasterserve.

Every error derives from :py:class:`RasterServeError` and can carry the
context in which it occurred (pipeline ``stage``, ``tile`` index and
``source`` index). The streaming controller fills in the context of errors
raised inside a tile step, so the first error of a pass tells where it
happened.
"""

__all__ = [
    'RasterServeError', 'ConfigurationError', 'ExecutionError', 'ResourceError',
    'AlignmentError', 'UnknownTensorError', 'DuplicatePlaceholderError',
    'ExpressionSyntaxError', 'GraphExecutionError', 'ReadBoundsError',
    'OutOfBoundsError', 'PatchCountMismatch', 'AssemblyError',
    'StreamingCancelled', 'ModelLoadError',
]

from typing import Optional


class RasterServeError(Exception):
    def __init__(
            self,
            message: str = '',
            stage: Optional[str] = None,
            tile: Optional[int] = None,
            source: Optional[int] = None
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.tile = tile
        self.source = source

    def add_context(
            self,
            stage: Optional[str] = None,
            tile: Optional[int] = None,
            source: Optional[int] = None
    ) -> 'RasterServeError':
        """Fill in context fields that are not set yet and return ``self``."""
        if self.stage is None:
            self.stage = stage
        if self.tile is None:
            self.tile = tile
        if self.source is None:
            self.source = source
        return self

    def __str__(self) -> str:
        context = []
        if self.stage is not None:
            context.append(f'stage={self.stage}')
        if self.tile is not None:
            context.append(f'tile={self.tile}')
        if self.source is not None:
            context.append(f'source={self.source}')
        if not context:
            return self.message
        return f'[{", ".join(context)}] {self.message}'


# Configuration errors are detected before the first tile is processed.

class ConfigurationError(RasterServeError, ValueError):
    pass


class AlignmentError(ConfigurationError):
    """Patch size, FOE size and spacing scale of a source don't fit together."""


class UnknownTensorError(ConfigurationError):
    """A configured input or output name does not exist in the graph."""


class DuplicatePlaceholderError(ConfigurationError):
    pass


class ExpressionSyntaxError(ConfigurationError):
    """A user placeholder expression is not of the form ``name=value``."""


# Execution errors abort the whole streaming pass.

class ExecutionError(RasterServeError, RuntimeError):
    pass


class GraphExecutionError(ExecutionError):
    pass


class ReadBoundsError(ExecutionError):
    """A requested input region can't be read from the source raster."""


class OutOfBoundsError(ExecutionError):
    """A mapped input region lies completely outside of a source raster."""


class PatchCountMismatch(ExecutionError):
    """Internal invariant violation: extracted patches != expected output positions."""


class AssemblyError(ExecutionError):
    pass


class StreamingCancelled(ExecutionError):
    pass


# Resource errors

class ResourceError(RasterServeError, OSError):
    pass


class ModelLoadError(ResourceError):
    pass
