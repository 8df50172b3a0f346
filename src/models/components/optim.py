# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import torch

from torch.optim import Optimizer
from typing import Callable, Iterable, List, Optional, Tuple

from src.utils.pylogger import get_pylogger
from src.utils.utils import ConfigurationError

log = get_pylogger(__name__)


@torch.no_grad()
def clip_grad_norm_per_tensor_(parameters: Iterable[torch.Tensor], max_norm: float) -> torch.Tensor:
    """Rescale each gradient whose own L2 norm exceeds `max_norm` down to exactly `max_norm`.

    Unlike `torch.nn.utils.clip_grad_norm_`, the norm is taken per tensor rather than over all of
    them together. Gradients at or under the threshold are left untouched.

    Returns:
        The pre-clip norm of every gradient, in parameter order.
    """
    grads = [p.grad for p in parameters if p.grad is not None]
    if len(grads) == 0:
        return torch.tensor([])
    norms = []
    for grad in grads:
        norm = torch.linalg.vector_norm(grad)
        scale = torch.where(norm > max_norm, max_norm / norm, torch.ones_like(norm))
        grad.mul_(scale)
        norms.append(norm)
    return torch.stack(norms)


class ClippedAdam(Optimizer):
    """Adam with per-tensor gradient clipping and one step counter per parameter group.

    Args:
        params: iterable of parameters to optimize or dicts defining parameter groups
        lr: learning rate
        betas: coefficients for the running averages of the gradient and its square
        eps: term added to the denominator for numerical stability
        max_grad_norm: per-tensor gradient norm threshold, applied before the moment updates
    """

    def __init__(
        self,
        params,
        lr: float = 1e-4,
        betas: Tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        max_grad_norm: float = 0.1
    ):
        betas = tuple(betas)
        if not 0.0 <= lr:
            raise ConfigurationError(f"Invalid learning rate: {lr}")
        if not 0.0 <= eps:
            raise ConfigurationError(f"Invalid epsilon value: {eps}")
        if len(betas) != 2 or not all(0.0 <= beta < 1.0 for beta in betas):
            raise ConfigurationError(f"Invalid beta parameters: {betas}")
        if not 0.0 < max_grad_norm:
            raise ConfigurationError(f"Invalid gradient norm threshold: {max_grad_norm}")
        defaults = dict(lr=lr, betas=betas, eps=eps, max_grad_norm=max_grad_norm, step=0)
        super().__init__(params, defaults)

    @torch.no_grad()
    def step(self, closure: Optional[Callable] = None):
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()

        for group in self.param_groups:
            params: List[torch.Tensor] = [p for p in group["params"] if p.grad is not None]
            if len(params) == 0:
                continue
            if any(p.grad.is_sparse for p in params):
                raise RuntimeError("ClippedAdam does not support sparse gradients")

            clip_grad_norm_per_tensor_(params, group["max_grad_norm"])

            group["step"] += 1
            step = group["step"]
            beta1, beta2 = group["betas"]
            bias_correction1 = 1.0 - beta1 ** step
            bias_correction2 = 1.0 - beta2 ** step

            for p in params:
                grad = p.grad
                state = self.state[p]
                if len(state) == 0:
                    state["exp_avg"] = torch.zeros_like(p, memory_format=torch.preserve_format)
                    state["exp_avg_sq"] = torch.zeros_like(p, memory_format=torch.preserve_format)
                exp_avg, exp_avg_sq = state["exp_avg"], state["exp_avg_sq"]

                exp_avg.mul_(beta1).add_(grad, alpha=1.0 - beta1)
                exp_avg_sq.mul_(beta2).addcmul_(grad, grad, value=1.0 - beta2)

                denom = (exp_avg_sq / bias_correction2).sqrt_().add_(group["eps"])
                p.addcdiv_(exp_avg / bias_correction1, denom, value=-group["lr"])

        return loss
