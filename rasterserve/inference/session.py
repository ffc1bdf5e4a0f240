# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

"""Model loading and graph execution.

A graph is a PyTorch module (regular ``nn.Module`` or TorchScript) whose
``forward()`` takes the placeholders as keyword arguments, e.g.
``forward(self, x1, x2, dropout: float)``. It returns either a dict that
maps output names to tensors, or a tensor (tuple of tensors) that is named
by the module's ``output_names`` attribute. A single unnamed tensor is
called ``"output"``.
"""

__all__ = ['GraphSession', 'InferenceRunner', 'load_model']

import glob
import inspect
import logging
import os
import time
import zipfile
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from torch import nn

from rasterserve.exceptions import GraphExecutionError, ModelLoadError, UnknownTensorError
from rasterserve.inference.bundles import ConstantPlaceholder
from rasterserve.inference.patches import PatchBatch

logger = logging.getLogger('rasterservelog')

DEFAULT_OUTPUT_NAME = 'output'


def _forward_signature(model: Any) -> Tuple[Tuple[str, ...], bool]:
    """Input names of ``model`` and whether it accepts arbitrary keyword args."""
    if isinstance(model, torch.jit.ScriptModule):
        args = model.forward.schema.arguments
        return tuple(a.name for a in args if a.name != 'self'), False
    forward = model.forward if isinstance(model, nn.Module) else model
    params = inspect.signature(forward).parameters.values()
    names = tuple(
        p.name for p in params
        if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)
    )
    var_kwargs = any(p.kind is p.VAR_KEYWORD for p in params)
    return names, var_kwargs


class GraphSession:
    """Holds a model on its device for the duration of a serving pass.

    Args:
        model: Graph as a ``nn.Module``, a TorchScript module or any
            callable that accepts its inputs as keyword arguments.
        device: Device on which to compute. If ``None``, CUDA is used if
            available, else the CPU.
        output_names: Names of the tensors if the graph returns a tuple.
            Defaults to ``model.output_names``.
    """
    def __init__(
            self,
            model: Any,
            device: Optional[Union[torch.device, str]] = None,
            output_names: Optional[Sequence[str]] = None
    ):
        if device is None:
            device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
            logger.info(f'Running on device {device}')
        elif isinstance(device, str):
            device = torch.device(device)
        self.device = device
        if isinstance(model, nn.Module):
            model.eval()
            model.to(device)
        self.model = model
        self.input_names, self.accepts_any_input = _forward_signature(model)
        if output_names is None:
            output_names = getattr(model, 'output_names', None)
        self.output_names = tuple(output_names) if output_names is not None else None

    def __enter__(self) -> 'GraphSession':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Release the model (and cached GPU memory)."""
        self.model = None
        if self.device.type == 'cuda':
            torch.cuda.empty_cache()

    def check_inputs(self, names: Sequence[str]) -> None:
        if self.accepts_any_input:
            return
        unknown = [n for n in names if n not in self.input_names]
        if unknown:
            raise UnknownTensorError(
                f'The graph has no inputs named {unknown}. Available inputs: {list(self.input_names)}'
            )

    def _name_outputs(self, out: Any) -> Dict[str, torch.Tensor]:
        if isinstance(out, Mapping):
            return dict(out)
        if isinstance(out, torch.Tensor):
            out = (out,)
        out = tuple(out)
        names = self.output_names
        if names is None:
            if len(out) != 1:
                raise UnknownTensorError(
                    f'The graph returns {len(out)} unnamed tensors. Return a dict or '
                    f'declare the names as the model attribute "output_names".'
                )
            names = (DEFAULT_OUTPUT_NAME,)
        if len(names) != len(out):
            raise UnknownTensorError(
                f'The graph returns {len(out)} tensors, but {len(names)} output names '
                f'are declared: {list(names)}'
            )
        return dict(zip(names, out))

    @torch.no_grad()
    def forward(self, feeds: Dict[str, Any]) -> Dict[str, torch.Tensor]:
        """Run the graph once and return all of its outputs by name."""
        if self.model is None:
            raise GraphExecutionError('The session is closed.')
        self.check_inputs(list(feeds))
        feeds = {
            k: v.to(self.device) if isinstance(v, torch.Tensor) else v
            for k, v in feeds.items()
        }
        try:
            out = self.model(**feeds)
        except Exception as e:
            raise GraphExecutionError(f'Graph execution failed: {type(e).__name__}: {e}') from e
        return self._name_outputs(out)

    def run(self, feeds: Dict[str, Any], fetches: Sequence[str]) -> Dict[str, np.ndarray]:
        """Run the graph and return the ``fetches`` outputs as float NumPy arrays."""
        outputs = self.forward(feeds)
        missing = [n for n in fetches if n not in outputs]
        if missing:
            raise UnknownTensorError(
                f'The graph has no outputs named {missing}. Available outputs: {list(outputs)}'
            )
        return {n: outputs[n].detach().cpu().float().numpy() for n in fetches}

    def probe(self, feeds: Dict[str, Any]) -> Dict[str, Tuple[int, ...]]:
        """Shapes of all outputs for the given (e.g. zero-valued) feeds."""
        outputs = self.forward(feeds)
        return {n: tuple(t.shape) for n, t in outputs.items()}


class InferenceRunner:
    """Binds patch batches and constants to a session's placeholders."""

    def __init__(self, session: GraphSession):
        self.session = session

    def run(
            self,
            inputs: Mapping[str, PatchBatch],
            constants: Sequence[ConstantPlaceholder],
            output_names: Sequence[str]
    ) -> Dict[str, np.ndarray]:
        feeds = {name: torch.from_numpy(batch.data) for name, batch in inputs.items()}
        for const in constants:
            feeds[const.name] = const.value
        start = time.time()
        result = self.session.run(feeds, output_names)
        logger.debug(f'Forward pass on {[b.num_patches for b in inputs.values()]} patches took {time.time() - start:.3f} s')
        return result


def _is_torchscript(path: str) -> bool:
    # TorchScript archives are zip files with a constants.pkl record. Since
    #  torch.save() also writes zip files, the zip check alone is not enough.
    if not zipfile.is_zipfile(path):
        return False
    with zipfile.ZipFile(path) as zf:
        return any(n.endswith('constants.pkl') for n in zf.namelist())


def _find_model_file(path: str) -> str:
    candidates = sorted(glob.glob(os.path.join(path, '*.pts'))) + sorted(glob.glob(os.path.join(path, '*.pt')))
    if len(candidates) != 1:
        raise ModelLoadError(
            f'Expected exactly one model file (*.pts or *.pt) in {path}, found {len(candidates)}.'
        )
    return candidates[0]


def load_model(
        path: str,
        device: Optional[Union[torch.device, str]] = None,
        output_names: Optional[Sequence[str]] = None
) -> GraphSession:
    """Load a serialized model and return a session for it.

    ``path`` is a TorchScript file, a pickled ``nn.Module`` or a
    directory that contains exactly one of those."""
    path = os.path.expanduser(path)
    if os.path.isdir(path):
        path = _find_model_file(path)
    if not os.path.isfile(path):
        raise ModelLoadError(f'Model path {path} not found.')
    if device is None:
        device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
    try:
        if _is_torchscript(path):
            model = torch.jit.load(path, map_location=device)
        else:
            model = torch.load(path, map_location=device, weights_only=False)
    except Exception as e:
        raise ModelLoadError(f'Can\'t load model {path}: {e}') from e
    if isinstance(model, Mapping):
        raise ModelLoadError(
            f'{path} contains a state dict, not a model. Save the model with '
            f'torch.jit.save() or torch.save(model) instead.'
        )
    if not callable(model):
        raise ModelLoadError(f'{path} does not contain a callable model (got {type(model).__name__}).')
    logger.info(f'Loaded model {path}')
    return GraphSession(model, device=device, output_names=output_names)
