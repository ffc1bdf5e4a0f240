"""Tests for configuration values and the placeholder parser."""

import numpy as np
import pytest

from rasterserve.data import ArraySource
from rasterserve.exceptions import (
    ConfigurationError, DuplicatePlaceholderError, ExpressionSyntaxError
)
from rasterserve.inference.bundles import (
    ConstantPlaceholder, InferenceMode, OutputSpec, SourceBundle,
    check_unique_placeholders, parse_placeholder
)


class TestParsePlaceholder:
    @pytest.mark.parametrize('expr, value', [
        ('is_training=false', False),
        ('is_training=True', True),
        ('n=3', 3),
        ('n=-12', -12),
        ('dropout=0.5', 0.5),
        ('eps=1e-3', 1e-3),
        ('scale=.25', 0.25),
    ])
    def test_values(self, expr, value):
        const = parse_placeholder(expr)
        assert const.value == value
        assert type(const.value) is type(value)

    def test_whitespace(self):
        assert parse_placeholder(' rate = 2 ') == ConstantPlaceholder('rate', 2)

    @pytest.mark.parametrize('expr', ['dropout', 'dropout=', '=0.5', 'x=abc', 'x=1.2.3', '1x=2'])
    def test_syntax_errors(self, expr):
        with pytest.raises(ExpressionSyntaxError):
            parse_placeholder(expr)


class TestConfig:
    def test_output_spec_mode(self):
        assert OutputSpec(['a']).mode is InferenceMode.PATCH
        assert OutputSpec(['a'], fully_convolutional=True).mode is InferenceMode.FULLY_CONVOLUTIONAL

    @pytest.mark.parametrize('kwargs', [
        dict(names=[]),
        dict(names=['a', 'a']),
        dict(names=['a'], spacing_scale=0),
        dict(names=['a'], foe=(0, 1)),
    ])
    def test_invalid_output_spec(self, kwargs):
        with pytest.raises(ConfigurationError):
            OutputSpec(**kwargs)

    def test_invalid_patch_size(self):
        with pytest.raises(ConfigurationError):
            SourceBundle(ArraySource(np.zeros((4, 4))), (0, 3), 'x1')

    def test_duplicate_placeholders(self):
        src = ArraySource(np.zeros((4, 4)))
        bundles = [SourceBundle(src, (1, 1), 'x1'), SourceBundle(src, (1, 1), 'x1')]
        with pytest.raises(DuplicatePlaceholderError) as excinfo:
            check_unique_placeholders(bundles)
        assert excinfo.value.source == 1

    def test_constant_shadows_source(self):
        src = ArraySource(np.zeros((4, 4)))
        with pytest.raises(DuplicatePlaceholderError):
            check_unique_placeholders([SourceBundle(src, (1, 1), 'x1')], [ConstantPlaceholder('x1', 1)])
