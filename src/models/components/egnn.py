# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import math
import torch

import torch.nn as nn
import torch.nn.functional as F

from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from torchtyping import TensorType, patch_typeguard
from typeguard import typechecked

from src.models.components import centralize
from src.models.components.buffers import LayerBuffers, TensorBufferSet, scatter_accumulate_, scatter_sum_
from src.utils.pylogger import get_pylogger
from src.utils.utils import ConfigurationError, DataIntegrityError

patch_typeguard()  # use before @typechecked

log = get_pylogger(__name__)

MAX_CACHED_BUFFER_SETS = 4


@dataclass
class MLPCache:
    x: torch.Tensor  # MLP input
    pre: torch.Tensor  # first linear output, before the activation
    act: torch.Tensor  # activated hidden features


@dataclass
class LayerCache:
    edge_index: torch.Tensor
    rel: torch.Tensor
    w: torch.Tensor
    message: MLPCache
    coord: MLPCache
    node: MLPCache


@dataclass
class DynamicsCache:
    atom_types: torch.Tensor
    time: MLPCache
    layers: List[LayerCache]
    mol_batch: Optional[torch.Tensor]
    num_mols: Optional[int]
    output_reset: bool = False


def silu_grad(x: torch.Tensor) -> torch.Tensor:
    sig = torch.sigmoid(x)
    return sig + x * sig * (1.0 - sig)


def accumulate_grad(param: nn.Parameter, grad: torch.Tensor):
    if param.grad is None:
        param.grad = grad
    else:
        param.grad.add_(grad)


@torch.no_grad()
def linear_backward(linear: nn.Linear, x: torch.Tensor, grad_out: torch.Tensor) -> torch.Tensor:
    """Accumulate `dW = g^T x` and `db = sum_rows(g)`, then return `dx = g W`."""
    accumulate_grad(linear.weight, grad_out.t() @ x)
    if linear.bias is not None:
        accumulate_grad(linear.bias, grad_out.sum(dim=0))
    return grad_out @ linear.weight


def mlp_forward(mlp: nn.Sequential, x: torch.Tensor) -> Tuple[torch.Tensor, MLPCache]:
    first, _, last = mlp
    pre = F.linear(x, first.weight, first.bias)
    act = F.silu(pre)
    return F.linear(act, last.weight, last.bias), MLPCache(x=x, pre=pre, act=act)


@torch.no_grad()
def mlp_backward(mlp: nn.Sequential, cache: MLPCache, grad_out: torch.Tensor) -> torch.Tensor:
    first, _, last = mlp
    grad_act = linear_backward(last, cache.act, grad_out)
    grad_pre = grad_act * silu_grad(cache.pre)
    return linear_backward(first, cache.x, grad_pre)


def two_layer_mlp(in_dim: int, hidden_dim: int, out_dim: int) -> nn.Sequential:
    return nn.Sequential(
        nn.Linear(in_dim, hidden_dim),
        nn.SiLU(),
        nn.Linear(hidden_dim, out_dim)
    )


def init_(module: nn.Module):
    if type(module) in {nn.Linear}:
        # He initialization, i.e. std = sqrt(2 / fan_in)
        nn.init.kaiming_normal_(module.weight, mode="fan_in", nonlinearity="relu")
        nn.init.zeros_(module.bias)


def validate_hidden_dim(hidden_dim: int):
    if hidden_dim < 4 or hidden_dim % 2 != 0:
        raise ConfigurationError(f"The hidden dimension must be even and at least 4, not {hidden_dim}")


class EGNNLayer(nn.Module):
    """E(n)-equivariant message-passing layer with hand-written forward and backward passes.

    For an edge `(src, dst)` the destination plays the role of node `i` and the source that of
    node `j`, so messages, translations and their sums all land on `dst`.
    """

    def __init__(self, hidden_dim: int, coord_init_gain: float = 1e-3):
        super().__init__()
        self.hidden_dim = hidden_dim

        self.message_mlp = two_layer_mlp(2 * hidden_dim + 1, hidden_dim, hidden_dim)
        self.coord_mlp = two_layer_mlp(hidden_dim, hidden_dim, 1)
        self.node_mlp = two_layer_mlp(2 * hidden_dim, hidden_dim, hidden_dim)

        self.apply(init_)
        # keep the first coordinate updates small
        nn.init.xavier_uniform_(self.coord_mlp[-1].weight, gain=coord_init_gain)

    @typechecked
    def forward(
        self,
        h: TensorType["num_nodes", "hidden_dim"],
        pos: TensorType["num_nodes", 3],
        edge_index: TensorType[2, "num_edges"],
        buffers: LayerBuffers
    ) -> Tuple[TensorType["num_nodes", "hidden_dim"], LayerCache]:
        """Run one layer, updating `pos` in place and returning the new node features."""
        src, dst = edge_index

        # messages
        rel = pos[dst] - pos[src]
        d2 = (rel ** 2).sum(dim=-1, keepdim=True)
        m, message_cache = mlp_forward(self.message_mlp, torch.cat([h[dst], h[src], d2], dim=-1))

        # aggregation
        scatter_sum_(buffers.agg_h, dst, m)
        w, coord_cache = mlp_forward(self.coord_mlp, m)
        scatter_sum_(buffers.agg_x, dst, rel * w)

        # coordinate update
        pos.add_(buffers.agg_x)

        # node update
        dh, node_cache = mlp_forward(self.node_mlp, torch.cat([h, buffers.agg_h], dim=-1))

        cache = LayerCache(
            edge_index=edge_index,
            rel=rel,
            w=w,
            message=message_cache,
            coord=coord_cache,
            node=node_cache
        )
        return h + dh, cache

    @torch.no_grad()
    @typechecked
    def backward(
        self,
        cache: LayerCache,
        grad_h: TensorType["num_nodes", "hidden_dim"],
        grad_pos: TensorType["num_nodes", 3]
    ) -> Tuple[TensorType["num_nodes", "hidden_dim"], TensorType["num_nodes", 3]]:
        """Accumulate weight gradients and return the gradients of the layer's inputs."""
        src, dst = cache.edge_index
        hidden_dim = self.hidden_dim

        # node update: h_out = h + node_mlp([h, agg_h])
        grad_node_in = mlp_backward(self.node_mlp, cache.node, grad_h)
        grad_h_in = grad_h + grad_node_in[:, :hidden_dim]
        grad_agg_h = grad_node_in[:, hidden_dim:]

        # coordinate update: pos_out = pos + agg_x
        grad_trans = grad_pos[dst]
        grad_rel = grad_trans * cache.w
        grad_w = (grad_trans * cache.rel).sum(dim=-1, keepdim=True)

        # messages feed both the coordinate MLP and the node aggregation
        grad_m = mlp_backward(self.coord_mlp, cache.coord, grad_w) + grad_agg_h[dst]
        grad_message_in = mlp_backward(self.message_mlp, cache.message, grad_m)
        grad_h_dst = grad_message_in[:, :hidden_dim]
        grad_h_src = grad_message_in[:, hidden_dim:2 * hidden_dim]
        grad_d2 = grad_message_in[:, 2 * hidden_dim:]
        grad_rel = grad_rel + 2.0 * cache.rel * grad_d2

        # return edge gradients to both endpoints
        scatter_accumulate_(grad_h_in, dst, grad_h_dst)
        scatter_accumulate_(grad_h_in, src, grad_h_src)
        grad_pos_in = grad_pos.clone()
        scatter_accumulate_(grad_pos_in, dst, grad_rel)
        scatter_accumulate_(grad_pos_in, src, -grad_rel)
        return grad_h_in, grad_pos_in


class TimestepConditioner(nn.Module):
    def __init__(self, hidden_dim: int):
        super().__init__()
        validate_hidden_dim(hidden_dim)
        self.hidden_dim = hidden_dim
        self.time_mlp = two_layer_mlp(hidden_dim, hidden_dim, hidden_dim)
        self.apply(init_)

    @staticmethod
    @typechecked
    def sinusoidal_embedding(
        t: int,
        dim: int,
        device: Union[torch.device, str] = "cpu",
        dtype: torch.dtype = torch.float32
    ) -> TensorType[1, "dim"]:
        validate_hidden_dim(dim)
        half_dim = dim // 2
        freqs = torch.exp(
            torch.arange(half_dim, device=device, dtype=torch.float64) * (-math.log(10000.0) / (half_dim - 1))
        )
        args = float(t) * freqs
        return torch.cat([torch.sin(args), torch.cos(args)]).to(dtype).unsqueeze(0)

    def forward(self, t: int) -> Tuple[torch.Tensor, MLPCache]:
        weight = self.time_mlp[0].weight
        emb = self.sinusoidal_embedding(t, self.hidden_dim, device=weight.device, dtype=weight.dtype)
        return mlp_forward(self.time_mlp, emb)

    @torch.no_grad()
    def backward(self, cache: MLPCache, grad_cond: TensorType[1, "hidden_dim"]):
        # the sinusoid itself has no weights
        mlp_backward(self.time_mlp, cache, grad_cond)


class EGNNDynamics(nn.Module):
    """Noise-prediction network: embeds atom types and the timestep, then runs the EGNN stack.

    The prediction is the displacement `pos_L - pos_0` that the layer stack applies to the input
    coordinates. It is invariant to translations and rotates with the input.
    """

    def __init__(
        self,
        num_atom_types: int = 10,
        hidden_dim: int = 64,
        num_layers: int = 4,
        coord_init_gain: float = 1e-3,
        center_output: bool = True
    ):
        super().__init__()
        validate_hidden_dim(hidden_dim)
        if num_atom_types < 1 or num_layers < 1:
            raise ConfigurationError(
                f"At least one atom type and one layer are required, not {num_atom_types} and {num_layers}"
            )
        self.num_atom_types = num_atom_types
        self.hidden_dim = hidden_dim
        self.num_layers = num_layers
        self.center_output = center_output

        self.embedding = nn.Embedding(num_atom_types, hidden_dim)
        nn.init.normal_(self.embedding.weight, std=math.sqrt(2.0 / num_atom_types))
        self.time_conditioner = TimestepConditioner(hidden_dim)
        self.layers = nn.ModuleList([
            EGNNLayer(hidden_dim, coord_init_gain=coord_init_gain) for _ in range(num_layers)
        ])

        self._buffer_sets: "OrderedDict[Tuple, TensorBufferSet]" = OrderedDict()

    def buffers_for(
        self,
        num_nodes: int,
        num_edges: int,
        device: torch.device,
        dtype: torch.dtype
    ) -> TensorBufferSet:
        signature = TensorBufferSet.make_signature(
            num_nodes, num_edges, self.hidden_dim, self.num_layers, device, dtype
        )
        if signature in self._buffer_sets:
            self._buffer_sets.move_to_end(signature)
            return self._buffer_sets[signature]
        buffers = TensorBufferSet(num_nodes, num_edges, self.hidden_dim, self.num_layers, device=device, dtype=dtype)
        self._buffer_sets[buffers.signature] = buffers
        if len(self._buffer_sets) > MAX_CACHED_BUFFER_SETS:
            self._buffer_sets.popitem(last=False)
        log.debug(f"Allocated {buffers.nbytes} bytes of layer buffers for {num_nodes} nodes and {num_edges} edges")
        return buffers

    @typechecked
    def check_atom_types(self, atom_types: TensorType["num_nodes"]) -> TensorType["num_nodes"]:
        if atom_types.is_floating_point():
            types = atom_types.round().long()
            if not torch.equal(types.to(atom_types.dtype), atom_types):
                raise DataIntegrityError("Atom types must be integral category indices")
        else:
            types = atom_types.long()
        if types.numel() > 0 and (types.min() < 0 or types.max() >= self.num_atom_types):
            raise DataIntegrityError(
                f"Atom types must lie in [0, {self.num_atom_types}), "
                f"but found values in [{int(types.min())}, {int(types.max())}]"
            )
        return types

    @typechecked
    def forward(
        self,
        atom_types: TensorType["num_nodes"],
        pos: TensorType["num_nodes", 3],
        edge_index: TensorType[2, "num_edges"],
        t: int,
        mol_batch: Optional[TensorType["num_nodes"]] = None,
        num_mols: Optional[int] = None
    ) -> Tuple[TensorType["num_nodes", 3], DynamicsCache]:
        types = self.check_atom_types(atom_types)
        if edge_index.numel() > 0 and (edge_index.min() < 0 or edge_index.max() >= pos.shape[0]):
            raise DataIntegrityError("Edge endpoints must index into the node table")
        edge_index = edge_index.long()

        cond, time_cache = self.time_conditioner(t)
        h = F.embedding(types, self.embedding.weight) + cond

        # the layers move a working copy of the input positions
        x = pos.clone()
        buffers = self.buffers_for(pos.shape[0], edge_index.shape[1], pos.device, pos.dtype)
        layer_caches = []
        for layer, layer_buffers in zip(self.layers, buffers.layers):
            h, layer_cache = layer(h, x, edge_index, layer_buffers)
            layer_caches.append(layer_cache)

        disp = x - pos
        output_reset = bool(torch.isnan(disp).any())
        if output_reset:
            log.warning("Detected NaN in the predicted displacement -> resetting EGNN `disp` output to zero")
            disp = torch.zeros_like(disp)
        if self.center_output:
            _, disp = centralize(disp, mol_batch, num_mols)

        cache = DynamicsCache(
            atom_types=types,
            time=time_cache,
            layers=layer_caches,
            mol_batch=mol_batch,
            num_mols=num_mols,
            output_reset=output_reset
        )
        return disp, cache

    @torch.no_grad()
    @typechecked
    def backward(self, cache: DynamicsCache, grad_disp: TensorType["num_nodes", 3]):
        """Accumulate `.grad` for every weight given the gradient of the loss w.r.t. `disp`."""
        if cache.output_reset:
            # a zeroed output carries no gradient back into the network
            return
        grad_pos = grad_disp
        if self.center_output:
            # removing the mean is an orthogonal projection, so it is its own adjoint
            _, grad_pos = centralize(grad_disp, cache.mol_batch, cache.num_mols)

        # `disp = pos_L - pos_0`, with `pos_0` being data
        grad_h = grad_disp.new_zeros((grad_disp.shape[0], self.hidden_dim))
        for layer, layer_cache in zip(reversed(self.layers), reversed(cache.layers)):
            grad_h, grad_pos = layer.backward(layer_cache, grad_h, grad_pos)

        # `h_0 = embedding[types] + cond`, with `cond` broadcast to every node
        self.time_conditioner.backward(cache.time, grad_h.sum(dim=0, keepdim=True))
        grad_embedding = torch.zeros_like(self.embedding.weight)
        grad_embedding.index_add_(0, cache.atom_types, grad_h)
        accumulate_grad(self.embedding.weight, grad_embedding)
