"""Blends recent and backlog content by ratio."""

import math
import random

from calmfeed.models import ContentItem


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class BacklogMixer:
    """Samples recent and backlog items to hit a backlog fraction.

    Sampling is a shuffle with the injected rng. Shortfalls on one side are
    backfilled from the other; nothing is duplicated or invented.
    """

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def mix(
        self,
        recent: list[ContentItem],
        backlog: list[ContentItem],
        ratio: float,
        target_size: int | None = None,
    ) -> list[ContentItem]:
        if ratio is None or ratio != ratio:
            ratio = 0.0
        ratio = min(1.0, max(0.0, ratio))

        total = len(recent) + len(backlog)
        if target_size is not None:
            total = min(total, max(target_size, 0))

        backlog_count = min(round_half_up(total * ratio), len(backlog))
        recent_count = min(total - backlog_count, len(recent))
        # Recent ran short: take more backlog
        backlog_count = min(total - recent_count, len(backlog))

        selected_recent = self._shuffle(recent)[:recent_count]
        selected_backlog = self._shuffle(backlog)[:backlog_count]
        return self._interleave(selected_recent, selected_backlog)

    def _shuffle(self, items: list[ContentItem]) -> list[ContentItem]:
        shuffled = list(items)
        self._rng.shuffle(shuffled)
        return shuffled

    @staticmethod
    def _interleave(a: list[ContentItem], b: list[ContentItem]) -> list[ContentItem]:
        result: list[ContentItem] = []
        for i in range(max(len(a), len(b))):
            if i < len(a):
                result.append(a[i])
            if i < len(b):
                result.append(b[i])
        return result
