# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import torch

from typing import Iterable, Union

from typeguard import typechecked
from torchtyping import patch_typeguard

patch_typeguard()  # use before @typechecked


@typechecked
def get_grad_norm(
    parameters: Union[torch.Tensor, Iterable[torch.Tensor]],
    norm_type: float = 2.0
) -> torch.Tensor:
    """Norm of all gradients taken together, as `torch.nn.utils.clip_grad_norm_` measures it."""
    if isinstance(parameters, torch.Tensor):
        parameters = [parameters]
    parameters = [p for p in parameters if p.grad is not None]
    if len(parameters) == 0:
        return torch.tensor(0.0)

    norm_type = float(norm_type)
    return torch.norm(
        torch.stack([torch.norm(p.grad.detach(), norm_type) for p in parameters]),
        p=norm_type
    )
