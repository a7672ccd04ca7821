from __future__ import annotations


class NotFoundError(KeyError):
    """イベント・ラウンド・出場者・審査員・採点者が見つからない。"""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key

    def __str__(self) -> str:
        return self.args[0]


class UnknownCriterionError(ValueError):
    def __init__(self, criteria_name: str, round_name: str) -> None:
        super().__init__(f"criterion {criteria_name!r} not found in round {round_name!r}")
        self.criteria_name = criteria_name
        self.round_name = round_name


class ScoringModeError(ValueError):
    """審査員は criteria 方式、採点者は orw 方式のイベントにのみ送信できる。"""


class DerivationCycleError(ValueError):
    def __init__(self, round_names: list[str]) -> None:
        super().__init__("derived rounds form a cycle: " + " -> ".join(round_names))
        self.round_names = round_names


class SubmissionTooLargeError(ValueError):
    def __init__(self, count: int, limit: int) -> None:
        super().__init__(f"a submission may cover at most {limit} contestants (got {count})")
        self.count = count
        self.limit = limit


class EventBusyError(RuntimeError):
    """別のプロセスがイベントのロックを保持したまま待ち時間を過ぎた。"""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"event {event_id} is being recomputed elsewhere; retry later")
        self.event_id = event_id


class SnapshotTooLargeError(RuntimeError):
    def __init__(self, round_id: str, size: int, limit: int) -> None:
        super().__init__(f"snapshot of round {round_id} is {size} bytes (limit {limit})")
        self.round_id = round_id
        self.size = size
        self.limit = limit
