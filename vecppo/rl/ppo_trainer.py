# ============================================================
# rl/ppo_trainer.py
#
# PPO update helper (with KL + clipfrac diagnostics)
#
# Notes:
# - Compatible with discrete (Categorical), continuous and
#   composite (tuple of heads) policies
# - dist.log_prob(actions) may return (B,) or (B, action_dim)
# - KL early-stop is checked per minibatch; the minibatch that
#   trips it is NOT applied
# ============================================================

from __future__ import annotations

import math
import warnings
from typing import Any, Dict, Optional, Sequence, Tuple

import torch
import torch.nn.functional as F

from vecppo.rl.gae import estimate_advantages
from vecppo.rl.metrics import LossInfo
from vecppo.rl.optim import gradient


# ============================
# Helpers
# ============================

def _reduce_logprob(logp: torch.Tensor) -> torch.Tensor:
    """Ensure log_prob (or entropy) is shape (B,)."""
    if logp.ndim == 1:
        return logp
    if logp.ndim == 2:
        return logp.sum(dim=-1)
    raise ValueError(f"Unsupported log_prob shape: {tuple(logp.shape)}")


def _as_heads(x) -> Tuple[torch.Tensor, ...]:
    """Single-head tensors become a 1-tuple; composite outputs pass through."""
    if isinstance(x, (tuple, list)):
        return tuple(_reduce_logprob(h) for h in x)
    return (_reduce_logprob(x),)


def _split_old(old_log_probs: torch.Tensor, num_heads: int) -> Tuple[torch.Tensor, ...]:
    """Stored log-probs carry a trailing head axis only for composite policies."""
    if num_heads == 1:
        return (old_log_probs.view(-1),)
    assert old_log_probs.shape[-1] == num_heads, (
        f"stored log_probs have {old_log_probs.shape[-1]} heads, policy returned {num_heads}"
    )
    return tuple(old_log_probs.unbind(dim=-1))


def normalize(x: torch.Tensor, eps: float = 1e-8) -> torch.Tensor:
    """Standardize in place to zero mean / unit variance."""
    mean, std = x.mean(), x.std()
    return x.sub_(mean).div_(std + eps)


def explained_variance(y_pred: torch.Tensor, y_true: torch.Tensor) -> float:
    """
    Shape-safe: flattens to (B,) to avoid accidental broadcasting.
    """
    y_true = y_true.detach().reshape(-1)
    y_pred = y_pred.detach().reshape(-1)
    var_y = torch.var(y_true, unbiased=False)
    if var_y.item() < 1e-12:
        return 0.0
    return float(1.0 - torch.var(y_true - y_pred, unbiased=False) / (var_y + 1e-12))


# ============================
# Losses
# ============================

def policy_loss_fn(
    old_log_prob: torch.Tensor,
    new_log_prob: torch.Tensor,
    advantages: torch.Tensor,
    clip_eps: float,
) -> Tuple[torch.Tensor, float, float]:
    """
    Clipped surrogate loss for one action head.

    Returns (policy_loss, clip_frac, kl_est); the diagnostics carry no gradient.
    """
    log_ratio = new_log_prob - old_log_prob
    ratio = torch.exp(log_ratio)

    pg_loss1 = -advantages * ratio
    pg_loss2 = -advantages * torch.clamp(ratio, 1.0 - clip_eps, 1.0 + clip_eps)
    policy_loss = torch.max(pg_loss1, pg_loss2).mean()

    with torch.no_grad():
        clip_frac = ((ratio - 1.0).abs() > clip_eps).float().mean().item()
        kl_est = ((ratio - 1.0) - log_ratio).mean().item()

    return policy_loss, clip_frac, kl_est


def composite_policy_loss(
    old_heads: Sequence[torch.Tensor],
    new_heads: Sequence[torch.Tensor],
    advantages: torch.Tensor,
    clip_eps: float,
) -> Tuple[torch.Tensor, float, float]:
    """
    Reduce per-head surrogate losses:
      - policy loss: sum over heads
      - clip fraction: mean over heads
      - KL estimate: max over heads (most conservative head gates early stop)
    """
    assert len(old_heads) == len(new_heads), "head count mismatch between stored and new log-probs"

    losses, clip_fracs, kls = [], [], []
    for old, new in zip(old_heads, new_heads):
        loss, clip_frac, kl = policy_loss_fn(old, new, advantages, clip_eps)
        losses.append(loss)
        clip_fracs.append(clip_frac)
        kls.append(kl)

    return torch.stack(losses).sum(), sum(clip_fracs) / len(clip_fracs), max(kls)


def value_loss_fn(
    old_values: torch.Tensor,
    new_values: torch.Tensor,
    value_targets: torch.Tensor,
    clip_value_loss: bool,
    clip_eps: float,
) -> torch.Tensor:
    if clip_value_loss:
        v_loss_unclipped = (new_values - value_targets) ** 2
        v_clipped = old_values + torch.clamp(new_values - old_values, -clip_eps, clip_eps)
        v_loss_clipped = (v_clipped - value_targets) ** 2
        return torch.max(v_loss_unclipped, v_loss_clipped).mean() / 2

    return F.mse_loss(new_values, value_targets)


def entropy_bonus(entropy, entropy_coef) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Returns (weighted bonus used in the loss, summed entropy for logging).

    For composite policies entropies sum across heads, each weighted by
    its own coefficient when `entropy_coef` is a tuple.
    """
    heads = [h.mean() for h in _as_heads(entropy)]

    if isinstance(entropy_coef, (tuple, list)):
        assert len(entropy_coef) == len(heads), (
            f"{len(entropy_coef)} entropy coefficients for {len(heads)} heads"
        )
        coefs = entropy_coef
    else:
        coefs = [entropy_coef] * len(heads)

    weighted = torch.stack([c * h for c, h in zip(coefs, heads)]).sum()
    return weighted, torch.stack(heads).sum()


# ============================
# Gradient-norm clipping
# ============================

@torch.no_grad()
def clip_grad_norm(grads: Sequence[torch.Tensor], max_norm: float) -> Tuple[float, float]:
    """
    Scale gradients in place so their global L2 norm is at most `max_norm`.

    Returns (pre-clip norm, scale). A non-finite norm skips clipping.
    """
    if len(grads) == 0:
        return 0.0, 1.0

    total_norm = torch.linalg.vector_norm(
        torch.stack([torch.linalg.vector_norm(g.detach().double(), 2) for g in grads]), 2
    ).item()

    if not math.isfinite(total_norm) or not math.isfinite(max_norm) or total_norm <= max_norm:
        return total_norm, 1.0

    scale = min(1.0, max_norm / total_norm)
    for g in grads:
        g.mul_(scale)
    return total_norm, scale


class NonFiniteWatch:
    """Counts consecutive non-finite losses and warns once a streak is long enough."""

    def __init__(self, warn_after: int = 3):
        self.warn_after = warn_after
        self.streak = 0
        self.total = 0

    def record(self, finite: bool):
        if finite:
            self.streak = 0
            return
        self.streak += 1
        self.total += 1
        if self.streak == self.warn_after:
            warnings.warn(
                f"{self.streak} consecutive non-finite PPO losses ({self.total} in total)",
                RuntimeWarning,
                stacklevel=3,
            )


# ============================
# Update step
# ============================

def train_minibatch(
    policy,
    optimizer,
    mini_batch: Dict[str, torch.Tensor],
    config,
    loss_info: LossInfo,
    watch: Optional[NonFiniteWatch] = None,
) -> bool:
    """
    One PPO gradient step on a minibatch.

    Returns True if the KL estimate exceeded `kl_cutoff_multiplier * target_kl`;
    in that case no parameter update is applied.
    """
    new_log_prob, entropy, new_value = policy.evaluate_actions(
        mini_batch["observations"],
        mini_batch["actions"],
        mini_batch.get("action_masks"),
    )

    new_heads = _as_heads(new_log_prob)
    old_heads = _split_old(mini_batch["log_probs"], len(new_heads))

    policy_loss, clip_frac, kl_est = composite_policy_loss(
        old_heads, new_heads, mini_batch["advantages"], config.clip_eps
    )
    value_loss = value_loss_fn(
        mini_batch["values"],
        new_value.reshape(-1),
        mini_batch["value_targets"],
        config.clip_value_loss,
        config.clip_eps,
    )
    entropy_term, entropy_loss = entropy_bonus(entropy, config.entropy_coef)

    total_loss = policy_loss - entropy_term + config.value_coef * value_loss

    loss_info(
        policy_loss=policy_loss.item(),
        value_loss=value_loss.item(),
        entropy_loss=entropy_loss.item(),
        total_loss=total_loss.item(),
        clip_frac=clip_frac,
        kl_est=kl_est,
    )
    if watch is not None:
        watch.record(math.isfinite(total_loss.item()))

    if config.target_kl is not None and kl_est > config.kl_cutoff_multiplier * config.target_kl:
        return True

    params = optimizer.parameters
    grads = gradient(total_loss, params)
    grad_norm, _ = clip_grad_norm(grads, config.max_grad_norm)
    loss_info(grad_norm=grad_norm)

    optimizer.apply(params, grads)
    return False


def train_epochs(
    policy,
    optimizer,
    buffer,
    config,
    sampler,
    watch: Optional[NonFiniteWatch] = None,
) -> Dict[str, Any]:
    """
    GAE + up to `num_epochs` shuffled passes of minibatch updates.

    An early stop abandons the rest of the epoch and all later epochs.
    Diagnostics are averaged over the last epoch that ran.
    """
    advantages, value_targets = estimate_advantages(buffer, config.gamma, config.gae_lambda)

    loss_info = LossInfo()
    early_stopped = False
    epochs = 0
    minibatches = 0

    for _ in range(config.num_epochs):
        loss_info.clear()
        epochs += 1

        for idxs in sampler.epoch():
            mini_batch = buffer.minibatch(idxs, advantages, value_targets)
            if config.normalize_advantages:
                normalize(mini_batch["advantages"])

            minibatches += 1
            if train_minibatch(policy, optimizer, mini_batch, config, loss_info, watch):
                early_stopped = True
                break

        if early_stopped:
            break

    # explained variance (value function fit)
    flat = buffer.flat()
    with torch.no_grad():
        _, _, v_all = policy.evaluate_actions(
            flat["observations"], flat["actions"], flat.get("action_masks")
        )
        ev = explained_variance(v_all, value_targets)

    out: Dict[str, Any] = loss_info.means()
    out.update(
        explained_variance=ev,
        early_stopped=bool(early_stopped),
        epochs=epochs,
        minibatches=minibatches,
    )
    return out
