import torch


def compute_gae(
    rewards: torch.Tensor,
    values: torch.Tensor,
    next_values: torch.Tensor,
    terminated: torch.Tensor,
    truncated: torch.Tensor,
    gamma: float,
    gae_lambda: float,
):
    """
    GAE for vectorized environments with termination/truncation split.

    Expected inputs, all shape (N, T) with env index first:
      - rewards, values, next_values: float
      - terminated, truncated:        bool

    `next_values[:, t]` is the value of the state that follows transition t
    (queried before any reset), so no shifting of `values` is needed.

    Only termination removes the bootstrap term; both termination and
    truncation stop advantages from flowing backward across the boundary.

    Advantages are NOT normalized here.
    """
    assert rewards.dim() == 2, f"rewards must be (N, T), got {tuple(rewards.shape)}"
    for name, x in (("values", values), ("next_values", next_values),
                    ("terminated", terminated), ("truncated", truncated)):
        assert x.shape == rewards.shape, f"{name} shape {tuple(x.shape)} != rewards shape {tuple(rewards.shape)}"

    not_terminated = (~terminated.bool()).to(values.dtype)
    not_done = (~(terminated.bool() | truncated.bool())).to(values.dtype)

    # 1-step TD error
    advantages = rewards + gamma * not_terminated * next_values - values

    trace = gae_lambda * gamma * not_done

    # Strictly reverse in time; the env axis is handled in parallel
    next_advantage = torch.zeros_like(advantages[:, 0])
    for t in reversed(range(advantages.shape[1])):
        advantages[:, t] += trace[:, t] * next_advantage
        next_advantage = advantages[:, t]

    value_targets = advantages + values
    return advantages, value_targets


def estimate_advantages(buffer, gamma: float, gae_lambda: float):
    """Run `compute_gae` on a RolloutBuffer without mutating it."""
    return compute_gae(
        buffer.rewards,
        buffer.values,
        buffer.next_values,
        buffer.terminated,
        buffer.truncated,
        gamma,
        gae_lambda,
    )
