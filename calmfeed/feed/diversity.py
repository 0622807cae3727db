"""Bounds how many consecutive feed items may come from one source."""

from calmfeed.models import ContentItem


class DiversityEnforcer:
    """Reorders a pool so no source runs longer than max_consecutive.

    When the run limit is hit, the nearest later item from a different
    source is pulled forward; skipped items keep their relative order. If
    only one source remains the limit is relaxed rather than dropping items.
    """

    def enforce(self, items: list[ContentItem], max_consecutive: int) -> list[ContentItem]:
        if not items:
            return []

        max_consecutive = max(1, int(max_consecutive))
        result: list[ContentItem] = []
        remaining = list(items)

        while remaining:
            run_source = self._run_source(result, max_consecutive)
            index = 0
            if run_source is not None:
                index = next(
                    (i for i, item in enumerate(remaining) if item.source_key != run_source),
                    0,
                )
            result.append(remaining.pop(index))

        return result

    @staticmethod
    def _run_source(result: list[ContentItem], max_consecutive: int):
        """The source filling the last max_consecutive slots, if any."""
        if len(result) < max_consecutive:
            return None
        tail = result[-max_consecutive:]
        key = tail[0].source_key
        if all(item.source_key == key for item in tail):
            return key
        return None
