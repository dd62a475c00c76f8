# ============================================================
# rl/optim.py
#
# Thin seams around torch autograd + torch.optim so the PPO step
# sees gradients as explicit values:
#   grads = gradient(loss, params)
#   optimizer.apply(params, grads, learning_rate)
# ============================================================

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import torch


def gradient(loss: torch.Tensor, parameters: Sequence[torch.Tensor]) -> List[torch.Tensor]:
    """
    Gradient of a scalar loss w.r.t. each parameter.

    Parameters the loss does not depend on get a zero gradient.
    """
    grads = torch.autograd.grad(loss, list(parameters), allow_unused=True)
    return [torch.zeros_like(p) if g is None else g for p, g in zip(parameters, grads)]


class GradientOptimizer:
    """
    Adapter over a torch optimizer (Adam by default).

    Keeps the per-parameter state (moment estimates) inside the wrapped
    optimizer and exposes a learning-rate setter for schedules.
    """

    def __init__(
        self,
        parameters: Iterable[torch.Tensor],
        learning_rate: float,
        optimizer_cls=torch.optim.Adam,
        **optimizer_kwargs,
    ):
        self.parameters = [p for p in parameters if p.requires_grad]
        self.optimizer = optimizer_cls(self.parameters, lr=learning_rate, **optimizer_kwargs)

    @property
    def learning_rate(self) -> float:
        return float(self.optimizer.param_groups[0]["lr"])

    def set_learning_rate(self, rate: float):
        for group in self.optimizer.param_groups:
            group["lr"] = rate

    @torch.no_grad()
    def apply(
        self,
        parameters: Sequence[torch.Tensor],
        gradients: Sequence[torch.Tensor],
        learning_rate: Optional[float] = None,
    ):
        """Consume `gradients` and update `parameters` in place."""
        assert len(parameters) == len(gradients), "one gradient per parameter expected"
        if learning_rate is not None:
            self.set_learning_rate(learning_rate)

        for p, g in zip(parameters, gradients):
            p.grad = g.detach().clone()
        self.optimizer.step()
        self.optimizer.zero_grad(set_to_none=True)

    def state_dict(self):
        return self.optimizer.state_dict()

    def load_state_dict(self, state):
        self.optimizer.load_state_dict(state)
