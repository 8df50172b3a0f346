# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import torch

import torch.nn as nn

from dataclasses import dataclass
from typing import List, Tuple, Union

from torchtyping import TensorType, patch_typeguard
from typeguard import typechecked

from src.utils.pylogger import get_pylogger

patch_typeguard()  # use before @typechecked

log = get_pylogger(__name__)


@typechecked
def scatter_accumulate_(
    out: TensorType["num_nodes", "num_feats"],
    index: TensorType["num_items"],
    src: TensorType["num_items", "num_feats"]
) -> TensorType["num_nodes", "num_feats"]:
    """Add each row of `src` onto row `index[k]` of `out`, in place."""
    out.scatter_add_(0, index.unsqueeze(-1).expand_as(src), src)
    return out


@typechecked
def scatter_sum_(
    out: TensorType["num_nodes", "num_feats"],
    index: TensorType["num_items"],
    src: TensorType["num_items", "num_feats"]
) -> TensorType["num_nodes", "num_feats"]:
    """Overwrite `out` with the per-destination sums of the rows of `src`."""
    out.zero_()
    return scatter_accumulate_(out, index, src)


@dataclass
class LayerBuffers:
    agg_h: torch.Tensor  # [num_nodes, hidden_dim] summed messages
    agg_x: torch.Tensor  # [num_nodes, 3] summed coordinate translations


class TensorBufferSet:
    """Scratch accumulators for every EGNN layer, sized for one graph shape.

    A set is only ever reused for a graph with the same node count, edge count,
    device and dtype; anything else needs a new set.
    """

    def __init__(
        self,
        num_nodes: int,
        num_edges: int,
        hidden_dim: int,
        num_layers: int,
        device: Union[torch.device, str] = "cpu",
        dtype: torch.dtype = torch.float32
    ):
        self.signature = self.make_signature(num_nodes, num_edges, hidden_dim, num_layers, device, dtype)
        self.layers: List[LayerBuffers] = [
            LayerBuffers(
                agg_h=torch.zeros((num_nodes, hidden_dim), device=device, dtype=dtype),
                agg_x=torch.zeros((num_nodes, 3), device=device, dtype=dtype),
            )
            for _ in range(num_layers)
        ]

    @staticmethod
    def make_signature(
        num_nodes: int,
        num_edges: int,
        hidden_dim: int,
        num_layers: int,
        device: Union[torch.device, str],
        dtype: torch.dtype
    ) -> Tuple:
        # tensors created under inference mode may not be updated in place outside of it
        return (
            num_nodes,
            num_edges,
            hidden_dim,
            num_layers,
            torch.device(device),
            dtype,
            torch.is_inference_mode_enabled(),
        )

    @property
    def nbytes(self) -> int:
        return sum(buf.agg_h.nbytes + buf.agg_x.nbytes for buf in self.layers)

    def __len__(self) -> int:
        return len(self.layers)


def check_gradient_buffers(module: nn.Module):
    """Assert that every populated gradient has its parameter's shape, dtype and byte length."""
    for name, param in module.named_parameters():
        if param.grad is None:
            continue
        assert param.grad.shape == param.shape, \
            f"Gradient for {name} has shape {tuple(param.grad.shape)}, expected {tuple(param.shape)}"
        assert param.grad.dtype == param.dtype, \
            f"Gradient for {name} has dtype {param.grad.dtype}, expected {param.dtype}"
        assert param.grad.nbytes == param.nbytes, \
            f"Gradient for {name} occupies {param.grad.nbytes} bytes, expected {param.nbytes}"
