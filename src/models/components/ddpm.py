# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import torch

import torch.nn as nn

from dataclasses import dataclass, field, fields
from enum import Enum
from torch_geometric.data import Data
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from torchtyping import TensorType, patch_typeguard
from typeguard import typechecked

from src.models.components import assert_mean_zero, centralize, sample_center_gravity_zero_gaussian
from src.models.components.egnn import DynamicsCache, EGNNDynamics
from src.utils.pylogger import get_pylogger
from src.utils.utils import ConfigurationError

patch_typeguard()  # use before @typechecked

log = get_pylogger(__name__)


class LinearNoiseSchedule(nn.Module):
    """Linearly spaced betas over `num_timesteps` steps, indexed from 1."""

    def __init__(self, num_timesteps: int = 500, beta_start: float = 1e-4, beta_end: float = 0.02):
        super().__init__()
        if num_timesteps < 2:
            raise ConfigurationError(f"At least two diffusion timesteps are required, not {num_timesteps}")
        if not 0.0 < beta_start < beta_end < 1.0:
            raise ConfigurationError(
                f"Betas must satisfy 0 < beta_start < beta_end < 1, not beta_start={beta_start}, beta_end={beta_end}"
            )
        self.num_timesteps = num_timesteps

        betas = torch.linspace(beta_start, beta_end, num_timesteps, dtype=torch.float64)
        alphas = 1.0 - betas
        alphas_cumprod = torch.cumprod(alphas, dim=0)
        alphas_cumprod_prev = torch.cat([torch.ones(1, dtype=torch.float64), alphas_cumprod[:-1]])
        posterior_variance = betas * (1.0 - alphas_cumprod_prev) / (1.0 - alphas_cumprod)

        # the stored float32 products must stay normal and strictly decreasing
        alphas_cumprod_f32 = alphas_cumprod.float()
        if alphas_cumprod[-1] < torch.finfo(torch.float32).tiny or not torch.all(
            alphas_cumprod_f32[1:] < alphas_cumprod_f32[:-1]
        ):
            raise ConfigurationError(
                f"A schedule of {num_timesteps} steps from beta_start={beta_start} to beta_end={beta_end} "
                f"drives alpha_cumprod to {alphas_cumprod[-1].item():.3e}, below float32 resolution"
            )

        self.register_buffer("betas", betas.float(), persistent=False)
        self.register_buffer("alphas", alphas.float(), persistent=False)
        self.register_buffer("alphas_cumprod", alphas_cumprod.float(), persistent=False)
        self.register_buffer("alphas_cumprod_prev", alphas_cumprod_prev.float(), persistent=False)
        self.register_buffer("posterior_variances", posterior_variance.float(), persistent=False)

    def index(self, t: int) -> int:
        if not 1 <= t <= self.num_timesteps:
            raise IndexError(f"Timestep {t} lies outside [1, {self.num_timesteps}]")
        return t - 1

    def beta(self, t: int) -> torch.Tensor:
        return self.betas[self.index(t)]

    def alpha(self, t: int) -> torch.Tensor:
        return self.alphas[self.index(t)]

    def alpha_cumprod(self, t: int) -> torch.Tensor:
        return self.alphas_cumprod[self.index(t)]

    def alpha_cumprod_prev(self, t: int) -> torch.Tensor:
        return self.alphas_cumprod_prev[self.index(t)]

    def posterior_variance(self, t: int) -> torch.Tensor:
        return self.posterior_variances[self.index(t)]


class EngineMode(str, Enum):
    TRAIN = "train"
    SAMPLE = "sample"
    DEBUG = "debug"


@dataclass
class StepState:
    """Everything one engine step reads or writes, keyed by field name."""
    graph: Optional[Data] = None
    generator: Optional[torch.Generator] = None
    t: Optional[int] = None
    x0: Optional[torch.Tensor] = None
    eps: Optional[torch.Tensor] = None
    x_t: Optional[torch.Tensor] = None
    eps_hat: Optional[torch.Tensor] = None
    cache: Optional[DynamicsCache] = None
    loss: Optional[torch.Tensor] = None
    grad_eps_hat: Optional[torch.Tensor] = None


@dataclass
class StepOutput:
    loss: torch.Tensor
    t: int


@dataclass(frozen=True)
class Stage:
    name: str
    fn: Callable[[StepState], None]
    reads: Tuple[str, ...] = ()
    writes: Tuple[str, ...] = ()


@dataclass
class Pipeline:
    """An ordered list of stages whose data dependencies are checked once, when it is built."""
    name: str
    stages: Sequence[Stage]
    inputs: Tuple[str, ...] = ()
    stage_names: Tuple[str, ...] = field(init=False)

    def __post_init__(self):
        self.validate()
        self.stage_names = tuple(stage.name for stage in self.stages)

    def validate(self):
        known_fields = {f.name for f in fields(StepState)}
        unknown_inputs = set(self.inputs) - known_fields
        if unknown_inputs:
            raise ConfigurationError(f"Pipeline `{self.name}` declares unknown inputs {sorted(unknown_inputs)}")
        available = set(self.inputs)
        seen = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ConfigurationError(f"Pipeline `{self.name}` repeats stage `{stage.name}`")
            seen.add(stage.name)
            unknown = (set(stage.reads) | set(stage.writes)) - known_fields
            if unknown:
                raise ConfigurationError(
                    f"Stage `{stage.name}` of pipeline `{self.name}` names unknown fields {sorted(unknown)}"
                )
            missing = set(stage.reads) - available
            if missing:
                raise ConfigurationError(
                    f"Stage `{stage.name}` of pipeline `{self.name}` reads {sorted(missing)} "
                    "before any input or earlier stage provides them"
                )
            available |= set(stage.writes)

    def run(
        self,
        state: StepState,
        device: Optional[torch.device] = None,
        hook: Optional[Callable[[Stage, StepState], None]] = None
    ) -> StepState:
        for stage in self.stages:
            stage.fn(state)
            if hook is not None:
                hook(stage, state)
        if device is not None and device.type == "cuda":
            torch.cuda.synchronize(device)
        return state


def graph_inputs(graph: Data) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, Optional[torch.Tensor], Optional[int]]:
    mol_batch = getattr(graph, "mol_batch", None)
    num_mols = int(mol_batch.max()) + 1 if mol_batch is not None and mol_batch.numel() > 0 else None
    return graph.atom_types, graph.pos, graph.edge_index, mol_batch, num_mols


def tensor_stats(tensor: torch.Tensor) -> Dict[str, Any]:
    values = tensor.detach().double()
    return {
        "shape": tuple(tensor.shape),
        "norm": values.norm().item() if values.numel() > 0 else 0.0,
        "mean": values.mean().item() if values.numel() > 0 else 0.0,
        "finite": bool(torch.isfinite(values).all()),
    }


class EquivariantDDPM(nn.Module):
    """Denoising diffusion over atom coordinates with an EGNN noise predictor.

    Training, sampling and debugging are pipelines of named stages that share one dynamics
    network, one noise schedule and one hand-written backward pass. Atom types and bonds are
    carried along unchanged; only coordinates are diffused.
    """

    def __init__(
        self,
        dynamics: EGNNDynamics,
        num_timesteps: int = 500,
        beta_start: float = 1e-4,
        beta_end: float = 0.02
    ):
        super().__init__()
        self.dynamics = dynamics
        self.schedule = LinearNoiseSchedule(num_timesteps, beta_start=beta_start, beta_end=beta_end)
        self.T = num_timesteps
        self.pipelines: Dict[EngineMode, Pipeline] = {mode: self.build_pipeline(mode) for mode in EngineMode}

    def build_pipeline(self, mode: EngineMode) -> Pipeline:
        sample_noise = Stage(
            "sample_noise", self.sample_noise_stage,
            reads=("graph", "generator", "t"), writes=("t", "x0", "eps", "x_t")
        )
        forward = Stage("forward", self.forward_stage, reads=("graph", "t", "x_t"), writes=("eps_hat", "cache"))
        loss = Stage("loss", self.loss_stage, reads=("eps", "eps_hat"), writes=("loss", "grad_eps_hat"))
        backward = Stage("backward", self.backward_stage, reads=("cache", "grad_eps_hat"))
        if mode == EngineMode.TRAIN:
            return Pipeline(mode.value, [sample_noise, forward, loss, backward], inputs=("graph", "generator", "t"))
        if mode == EngineMode.DEBUG:
            return Pipeline(mode.value, [sample_noise, forward, loss], inputs=("graph", "generator", "t"))
        if mode == EngineMode.SAMPLE:
            return Pipeline(
                mode.value,
                [
                    forward,
                    Stage(
                        "ancestral_update", self.ancestral_update_stage,
                        reads=("generator", "t", "x_t", "eps_hat"), writes=("x_t",)
                    ),
                    Stage("center", self.center_stage, reads=("graph", "x_t"), writes=("x_t",)),
                ],
                inputs=("graph", "generator", "t", "x_t")
            )
        raise ConfigurationError(f"Unknown engine mode: {mode}")

    @property
    def device(self) -> torch.device:
        return self.dynamics.embedding.weight.device

    # stages

    def sample_noise_stage(self, state: StepState):
        _, pos, _, mol_batch, num_mols = graph_inputs(state.graph)
        _, state.x0 = centralize(pos.to(self.dynamics.embedding.weight.dtype), mol_batch, num_mols)
        if state.t is None:
            draw_device = state.generator.device if state.generator is not None else "cpu"
            state.t = int(torch.randint(1, self.T + 1, (1,), generator=state.generator, device=draw_device).item())
        state.eps = sample_center_gravity_zero_gaussian(
            state.x0.shape, state.x0.device, mol_batch=mol_batch, num_mols=num_mols, generator=state.generator
        ).to(state.x0.dtype)
        alpha_cumprod_t = self.schedule.alpha_cumprod(state.t)
        state.x_t = torch.sqrt(alpha_cumprod_t) * state.x0 + torch.sqrt(1.0 - alpha_cumprod_t) * state.eps

    def forward_stage(self, state: StepState):
        atom_types, _, edge_index, mol_batch, num_mols = graph_inputs(state.graph)
        state.eps_hat, state.cache = self.dynamics(
            atom_types, state.x_t, edge_index, state.t, mol_batch=mol_batch, num_mols=num_mols
        )

    def loss_stage(self, state: StepState):
        diff = state.eps_hat - state.eps
        state.loss = (diff ** 2).mean()
        state.grad_eps_hat = 2.0 * diff / diff.numel()

    def backward_stage(self, state: StepState):
        self.dynamics.backward(state.cache, state.grad_eps_hat)

    def ancestral_update_stage(self, state: StepState):
        t = state.t
        beta_t = self.schedule.beta(t)
        alpha_t = self.schedule.alpha(t)
        alpha_cumprod_t = self.schedule.alpha_cumprod(t)
        mu = (state.x_t - (beta_t / torch.sqrt(1.0 - alpha_cumprod_t)) * state.eps_hat) / torch.sqrt(alpha_t)
        if t > 1:
            _, _, _, mol_batch, num_mols = graph_inputs(state.graph)
            z = sample_center_gravity_zero_gaussian(
                mu.shape, mu.device, mol_batch=mol_batch, num_mols=num_mols, generator=state.generator
            ).to(mu.dtype)
            mu = mu + torch.sqrt(self.schedule.posterior_variance(t)) * z
        state.x_t = mu

    def center_stage(self, state: StepState):
        _, _, _, mol_batch, num_mols = graph_inputs(state.graph)
        _, state.x_t = centralize(state.x_t, mol_batch, num_mols)

    # public API

    @typechecked
    def training_step(
        self,
        graph: Data,
        generator: Optional[torch.Generator] = None,
        t: Optional[int] = None
    ) -> StepOutput:
        """Noise the graph's coordinates, predict the noise and accumulate weight gradients."""
        state = StepState(graph=graph, generator=generator, t=t)
        with torch.no_grad():
            self.pipelines[EngineMode.TRAIN].run(state, device=self.device)
        return StepOutput(loss=state.loss, t=state.t)

    @typechecked
    def evaluate(
        self,
        graph: Data,
        generator: Optional[torch.Generator] = None,
        t: Optional[int] = None
    ) -> StepOutput:
        state = StepState(graph=graph, generator=generator, t=t)
        with torch.no_grad():
            self.pipelines[EngineMode.DEBUG].run(state, device=self.device)
        return StepOutput(loss=state.loss, t=state.t)

    @typechecked
    def debug_step(
        self,
        graph: Data,
        t: int,
        generator: Optional[torch.Generator] = None
    ) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Run one noising and prediction step, reporting statistics of every tensor each stage writes."""
        stats: Dict[str, Dict[str, Dict[str, Any]]] = {}

        def record(stage: Stage, state: StepState):
            stage_stats = {}
            for name in stage.writes:
                value = getattr(state, name)
                if isinstance(value, torch.Tensor):
                    stage_stats[name] = tensor_stats(value)
            stats[stage.name] = stage_stats
            for name, value in stage_stats.items():
                log.info(
                    f"[{stage.name}] {name}: norm={value['norm']:.6f}, mean={value['mean']:.6f}, finite={value['finite']}"
                )

        state = StepState(graph=graph, generator=generator, t=t)
        with torch.no_grad():
            self.pipelines[EngineMode.DEBUG].run(state, device=self.device, hook=record)
        return stats

    @torch.no_grad()
    @typechecked
    def sample(
        self,
        graph: Data,
        pos: Optional[TensorType["num_nodes", 3]] = None,
        generator: Optional[torch.Generator] = None,
        return_frames: int = 1
    ) -> torch.Tensor:
        """Run reverse diffusion from `pos` (or from zero-mean noise) down to `t = 1`.

        Returns the final coordinates, or `return_frames` evenly spaced snapshots of the chain with
        the final coordinates first.
        """
        assert 0 < return_frames <= self.T, f"Cannot return {return_frames} frames from {self.T} timesteps"
        assert self.T % return_frames == 0, f"{self.T} timesteps cannot be split into {return_frames} frames"

        _, graph_pos, _, mol_batch, num_mols = graph_inputs(graph)
        dtype = self.dynamics.embedding.weight.dtype
        if pos is None:
            x = sample_center_gravity_zero_gaussian(
                graph_pos.shape, graph_pos.device, mol_batch=mol_batch, num_mols=num_mols, generator=generator
            ).to(dtype)
        else:
            _, x = centralize(pos.to(device=graph_pos.device, dtype=dtype), mol_batch, num_mols)

        chain = x.new_zeros((return_frames,) + tuple(x.shape))
        state = StepState(graph=graph, generator=generator, x_t=x)
        pipeline = self.pipelines[EngineMode.SAMPLE]
        for s in reversed(range(0, self.T)):
            state.t = s + 1
            pipeline.run(state, device=self.device)

            # save frame
            if (s * return_frames) % self.T == 0:
                idx = (s * return_frames) // self.T
                chain[idx] = state.x_t

        if not torch.isfinite(state.x_t).all():
            log.warning("Sampled coordinates contain non-finite values")
        else:
            assert_mean_zero(state.x_t, mol_batch, num_mols)
        return chain.squeeze(0) if return_frames == 1 else chain

