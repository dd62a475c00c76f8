# vecppo/rl/train_ppo.py

"""
Vectorized PPO training (CLI)

- N copies of one Gymnasium environment behind MultiEnv
- Reference actor-critic picked from the action space
- JSON metrics log + final checkpoint per seed
"""

import argparse
import math
import os
from dataclasses import fields

import gymnasium as gym
import torch

from vecppo.envs.corridor_env import CorridorEnv
from vecppo.envs.multi_env import MultiEnv
from vecppo.models.factory import make_actor_critic
from vecppo.rl.metrics import write_log_json
from vecppo.rl.optim import GradientOptimizer
from vecppo.rl.ppo_config import PPOConfig, make_continuous_config, make_discrete_config
from vecppo.rl.solver import set_seed, solve


def make_env(env_id: str):
    def _init():
        if env_id == "corridor":
            return CorridorEnv()
        if env_id == "corridor-hybrid":
            return CorridorEnv(hybrid=True)
        return gym.make(env_id)

    return _init


def _float_or_none(text: str):
    return None if text.lower() == "none" else float(text)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Train a PPO agent on vectorized Gymnasium environments")
    parser.add_argument("--env", type=str, default="corridor")
    parser.add_argument("--num_envs", type=int, default=8)
    parser.add_argument("--output_dir", type=str, default="artifacts/ppo")
    parser.add_argument("--preset", choices=("default", "discrete", "continuous"), default="default")
    parser.add_argument("--quiet", action="store_true")

    # Hyperparameters (None -> keep preset value)
    parser.add_argument("--total_transition_budget", type=int)
    parser.add_argument("--trajectory_length", type=int)
    parser.add_argument("--batch_size", type=int)
    parser.add_argument("--num_minibatches", type=int)
    parser.add_argument("--num_epochs", type=int)
    parser.add_argument("--gamma", type=float)
    parser.add_argument("--gae_lambda", type=float)
    parser.add_argument("--clip_eps", type=float)
    parser.add_argument("--clip_value_loss", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--normalize_advantages", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--entropy_coef", type=float)
    parser.add_argument("--value_coef", type=float)
    parser.add_argument("--max_grad_norm", type=float, help="use 'inf' to disable clipping")
    parser.add_argument("--target_kl", type=_float_or_none, default=argparse.SUPPRESS, help="use 'none' to disable early stop")
    parser.add_argument("--learning_rate", type=float)
    parser.add_argument("--lr_decay", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--seed", type=int)
    return parser


def config_from_args(args: argparse.Namespace) -> PPOConfig:
    overrides = {}
    for f in fields(PPOConfig):
        if not hasattr(args, f.name):
            continue
        value = getattr(args, f.name)
        # target_kl=None is meaningful; the flag is absent from args when not given
        if value is None and f.name != "target_kl":
            continue
        overrides[f.name] = value

    if overrides.get("num_minibatches") is None and "batch_size" in overrides:
        overrides["num_minibatches"] = None

    if args.preset == "discrete":
        return make_discrete_config(**overrides)
    if args.preset == "continuous":
        return make_continuous_config(**overrides)
    return PPOConfig(**overrides)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    config = config_from_args(args)
    if not math.isfinite(config.max_grad_norm) and not args.quiet:
        print("[Config] gradient-norm clipping disabled")

    seed_dir = os.path.join(args.output_dir, f"seed_{config.seed}")
    os.makedirs(seed_dir, exist_ok=True)

    set_seed(config.seed)
    env = MultiEnv([make_env(args.env) for _ in range(args.num_envs)], seed=config.seed)
    policy = make_actor_critic(env.single_observation_space, env.single_action_space)
    optimizer = GradientOptimizer(policy.parameters(), config.learning_rate)

    try:
        policy, metrics = solve(
            env,
            policy,
            config,
            optimizer=optimizer,
            verbose=not args.quiet,
            log_path=os.path.join(seed_dir, "train_log.json"),
        )
    finally:
        env.close()

    final_path = os.path.join(seed_dir, "final.pt")
    torch.save(
        {
            "policy_state_dict": policy.state_dict(),
            "optimizer_state_dict": optimizer.state_dict(),
            "seed": config.seed,
            "global_step": metrics["learning_rate"][0][-1],
            "env": args.env,
        },
        final_path,
    )
    write_log_json(os.path.join(seed_dir, "config.json"), {f.name: getattr(config, f.name) for f in fields(config)})

    if not args.quiet:
        print(f"\n[Final] Model saved to {final_path}")
        print(f"[Final] Logs written to {seed_dir}\n")

    return policy, metrics


if __name__ == "__main__":
    main()
