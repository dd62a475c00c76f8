# ============================================================
# rl/sampler.py
#
# Random partition of the flattened N·T index space into
# equal-size minibatches, redrawn every epoch.
# ============================================================

from typing import List, Optional

import torch


class MinibatchSampler:
    def __init__(self, num_transitions: int, batch_size: int, generator: Optional[torch.Generator] = None):
        if batch_size <= 0 or num_transitions % batch_size != 0:
            raise ValueError(
                f"num_transitions={num_transitions} not divisible by batch_size={batch_size}"
            )
        self.num_transitions = num_transitions
        self.batch_size = batch_size
        self.generator = generator
        self._last_perm = None

    @property
    def num_minibatches(self) -> int:
        return self.num_transitions // self.batch_size

    def epoch(self) -> List[torch.Tensor]:
        """Index chunks covering every transition exactly once."""
        perm = torch.randperm(self.num_transitions, generator=self.generator)
        # Never hand out the previous epoch's permutation again
        while (
            self._last_perm is not None
            and self.num_transitions > 1
            and torch.equal(perm, self._last_perm)
        ):
            perm = torch.randperm(self.num_transitions, generator=self.generator)
        self._last_perm = perm
        return list(perm.split(self.batch_size))

    def __iter__(self):
        return iter(self.epoch())
