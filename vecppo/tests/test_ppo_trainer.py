"""
Tests for the PPO update step: losses, composite heads, gradient clipping
and KL early stopping.
"""

import math

import pytest
import torch

from vecppo.models.ppo_actor_critic import PPOActorCritic
from vecppo.models.ppo_actor_critic_hybrid import PPOActorCriticHybrid
from vecppo.rl.metrics import LossInfo
from vecppo.rl.optim import GradientOptimizer
from vecppo.rl.ppo_config import PPOConfig
from vecppo.rl.ppo_trainer import (
    NonFiniteWatch,
    clip_grad_norm,
    composite_policy_loss,
    entropy_bonus,
    normalize,
    policy_loss_fn,
    train_epochs,
    train_minibatch,
    value_loss_fn,
)
from vecppo.rl.rollout_buffer import RolloutBuffer
from vecppo.rl.sampler import MinibatchSampler


# ----------------------------
# Losses
# ----------------------------

def test_identical_policies_have_no_clipping_and_no_kl():
    logp = torch.randn(16)
    _, clip_frac, kl = policy_loss_fn(logp, logp.clone(), torch.randn(16), 0.2)
    assert clip_frac == 0.0
    assert kl == 0.0


def test_policy_loss_takes_pessimistic_bound():
    old = torch.zeros(2)
    new = torch.full((2,), math.log(2.0))
    adv = torch.tensor([1.0, -1.0])

    loss, clip_frac, _ = policy_loss_fn(old, new, adv, 0.2)

    # adv=+1: max(-2, -1.2) = -1.2 ; adv=-1: max(2, 1.2) = 2
    assert loss.item() == pytest.approx((-1.2 + 2.0) / 2)
    assert clip_frac == 1.0


def test_composite_heads_sum_mean_and_max():
    old = (torch.zeros(4), torch.zeros(4))
    new = (torch.zeros(4), torch.full((4,), 1.0))
    adv = torch.ones(4)

    loss, clip_frac, kl = composite_policy_loss(old, new, adv, 0.2)

    _, _, kl_b = policy_loss_fn(old[1], new[1], adv, 0.2)
    assert clip_frac == pytest.approx(0.5)
    assert kl == pytest.approx(kl_b)
    assert kl_b == pytest.approx(math.e - 2.0, rel=1e-5)
    assert loss.item() == pytest.approx(-1.0 + -1.2)


def test_value_loss_plain_and_clipped():
    old = torch.zeros(3)
    new = torch.ones(3)
    target = torch.ones(3)

    assert value_loss_fn(old, new, target, False, 0.2).item() == 0.0
    # clipped prediction 0.2 -> error 0.64, halved
    assert value_loss_fn(old, new, target, True, 0.2).item() == pytest.approx(0.32)


def test_entropy_bonus_with_per_head_coefficients():
    entropy = (torch.full((5,), 2.0), torch.full((5, 2), 0.5))
    weighted, total = entropy_bonus(entropy, (0.1, 1.0))
    assert total.item() == pytest.approx(3.0)
    assert weighted.item() == pytest.approx(0.1 * 2.0 + 1.0 * 1.0)


def test_normalize_is_in_place():
    x = torch.tensor([1.0, 2.0, 3.0, 10.0])
    out = normalize(x)
    assert out is x
    assert x.mean().abs().item() < 1e-6
    assert x.std().item() == pytest.approx(1.0, rel=1e-4)


# ----------------------------
# Gradient clipping
# ----------------------------

def test_clip_grad_norm_below_threshold_is_identity():
    grads = [torch.tensor([0.3, 0.4]), torch.tensor([0.0])]
    norm, scale = clip_grad_norm(grads, 1.0)
    assert norm == pytest.approx(0.5)
    assert scale == 1.0
    assert torch.equal(grads[0], torch.tensor([0.3, 0.4]))


def test_clip_grad_norm_rescales_to_max_norm():
    grads = [torch.tensor([3.0, 0.0]), torch.tensor([[0.0, 4.0]])]
    norm, scale = clip_grad_norm(grads, 0.5)

    assert norm == pytest.approx(5.0)
    assert scale == pytest.approx(0.1)
    post = math.sqrt(sum(float(g.pow(2).sum()) for g in grads))
    assert post == pytest.approx(0.5, rel=1e-6)


def test_clip_grad_norm_skips_non_finite():
    grads = [torch.tensor([float("inf"), 1.0])]
    norm, scale = clip_grad_norm(grads, 0.5)
    assert not math.isfinite(norm)
    assert scale == 1.0
    assert grads[0][1].item() == 1.0


def test_repeated_non_finite_losses_warn():
    watch = NonFiniteWatch(warn_after=2)
    watch.record(False)
    watch.record(True)
    watch.record(False)
    with pytest.warns(RuntimeWarning, match="consecutive non-finite"):
        watch.record(False)
    assert watch.total == 3


# ----------------------------
# Update step / epoch loop
# ----------------------------

def _filled_buffer(policy, N=2, T=4, obs_dim=4, log_prob_shift=0.0, seed=0):
    g = torch.Generator().manual_seed(seed)
    buffer = RolloutBuffer(num_envs=N, traj_len=T, obs_shape=(obs_dim,))
    buffer.observations.copy_(torch.randn(N, T, obs_dim, generator=g))
    buffer.actions.copy_(torch.randint(0, policy.num_actions, (N, T), generator=g))
    buffer.rewards.copy_(torch.randn(N, T, generator=g))
    buffer.next_values.copy_(torch.randn(N, T, generator=g))

    with torch.no_grad():
        flat = buffer.flat()
        logp, _, value = policy.evaluate_actions(flat["observations"], flat["actions"])
    buffer.log_probs.copy_((logp - log_prob_shift).view(N, T))
    buffer.values.copy_(value.view(N, T))
    return buffer


def _snapshot(policy):
    return [p.detach().clone() for p in policy.parameters()]


def _unchanged(policy, snapshot):
    return all(torch.equal(p, s) for p, s in zip(policy.parameters(), snapshot))


class TestEarlyStop:
    def setup_method(self):
        torch.manual_seed(0)
        self.policy = PPOActorCritic(obs_dim=4, num_actions=3, hidden_dim=16)
        self.optimizer = GradientOptimizer(self.policy.parameters(), learning_rate=1e-2)
        self.config = PPOConfig(
            total_transition_budget=8,
            trajectory_length=4,
            batch_size=2,
            num_epochs=3,
            target_kl=0.01,
        )
        self.sampler = MinibatchSampler(8, 2, torch.Generator().manual_seed(0))

    def test_kl_over_threshold_aborts_without_update(self):
        # new - old = 1 for every transition -> kl ≈ e - 2 >> 1.5 * 0.01
        buffer = _filled_buffer(self.policy, log_prob_shift=1.0)
        before = _snapshot(self.policy)

        stats = train_epochs(self.policy, self.optimizer, buffer, self.config, self.sampler)

        assert stats["early_stopped"]
        assert stats["minibatches"] == 1
        assert stats["epochs"] == 1
        assert stats["kl_est"] > 1.5 * self.config.target_kl
        assert "grad_norm" not in stats
        assert _unchanged(self.policy, before)
        assert len(self.optimizer.optimizer.state) == 0

    def test_train_minibatch_signals_stop(self):
        buffer = _filled_buffer(self.policy, log_prob_shift=1.0)
        adv = torch.randn(2, 4)
        batch = buffer.minibatch(torch.tensor([0, 5]), adv, adv)
        info = LossInfo()

        assert train_minibatch(self.policy, self.optimizer, batch, self.config, info) is True
        assert len(info) == 1

    def test_on_policy_data_runs_all_epochs_and_updates(self):
        buffer = _filled_buffer(self.policy)
        before = _snapshot(self.policy)
        config = PPOConfig(
            total_transition_budget=8,
            trajectory_length=4,
            batch_size=2,
            num_epochs=3,
            target_kl=None,
        )

        stats = train_epochs(self.policy, self.optimizer, buffer, config, self.sampler)

        assert not stats["early_stopped"]
        assert stats["epochs"] == 3
        assert stats["minibatches"] == 12
        assert not _unchanged(self.policy, before)
        for key in ("policy_loss", "value_loss", "entropy_loss", "total_loss",
                    "clip_frac", "kl_est", "grad_norm", "explained_variance"):
            assert key in stats


def test_composite_policy_trains_through_epoch_loop():
    torch.manual_seed(0)
    policy = PPOActorCriticHybrid(obs_dim=3, num_actions=3, action_dim=2, hidden_dim=16)
    N, T = 2, 4
    buffer = RolloutBuffer(num_envs=N, traj_len=T, obs_shape=(3,), action_shape=(3,),
                           action_dtype=torch.float32, num_heads=2)
    buffer.observations.copy_(torch.randn(N, T, 3))
    with torch.no_grad():
        action, log_prob, _, value = policy.act_batch(buffer.observations.view(N * T, 3))
    buffer.actions.copy_(action.view(N, T, 3))
    buffer.log_probs.copy_(torch.stack(log_prob, dim=-1).view(N, T, 2))
    buffer.values.copy_(value.view(N, T))
    buffer.rewards.copy_(torch.randn(N, T))

    config = PPOConfig(total_transition_budget=8, trajectory_length=4, batch_size=4,
                       num_epochs=2, entropy_coef=(0.01, 0.001), target_kl=None)
    optimizer = GradientOptimizer(policy.parameters(), learning_rate=1e-3)
    sampler = MinibatchSampler(8, 4, torch.Generator().manual_seed(0))

    stats = train_epochs(policy, optimizer, buffer, config, sampler)

    assert stats["minibatches"] == 4
    # First minibatch is evaluated on the collection-time parameters
    assert math.isfinite(stats["total_loss"])
