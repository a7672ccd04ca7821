from __future__ import annotations

from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import Protocol, TypeVar

from .domain import ComputedRoundScore, Contestant, Criterion, RankSumRow

T = TypeVar("T")


class Ranked(Protocol):
    rank: Decimal


R = TypeVar("R", bound=Ranked)


def average_rank(values: Sequence[Decimal], descending: bool = True) -> list[Decimal]:
    """平均順位（いわゆる6.5ルール）を入力と同じ並びで返す。

    同点の連続区間は先頭位置と末尾位置の平均を共有する（例: 90,90,80 -> 1.5,1.5,3）。
    昇順はキーを反転させて同じ降順の処理で求める。
    """

    keys = list(values) if descending else [-v for v in values]
    order = sorted(range(len(keys)), key=lambda i: keys[i], reverse=True)
    ranks = [Decimal(0)] * len(keys)

    i = 0
    while i < len(order):
        j = i
        while j + 1 < len(order) and keys[order[j + 1]] == keys[order[i]]:
            j += 1
        avg = Decimal(i + 1 + j + 1) / 2
        for k in range(i, j + 1):
            ranks[order[k]] = avg
        i = j + 1

    return ranks


def rank_by(items: Sequence[T], key: Callable[[T], Decimal], descending: bool = True) -> list[Decimal]:
    return average_rank([key(item) for item in items], descending=descending)


def winners(rows: Sequence[R]) -> list[R]:
    if not rows:
        return []
    best = min(row.rank for row in rows)
    return [row for row in rows if row.rank == best]


def rank_sum(
    participants: Sequence[Contestant],
    criteria: Sequence[Criterion],
    criterion_scores: Sequence[ComputedRoundScore],
) -> list[RankSumRow]:
    """基準ごとの順位を合計し、その合計の小さい順に順位付けする（合議順位）。"""

    weighted = {
        (s.contestant_id, s.criterion_id): s.score
        for s in criterion_scores
        if s.criterion_id is not None
    }
    rows = [
        RankSumRow(
            contestant_id=p.id,
            code=p.code,
            name=p.name,
            organization=p.organization,
            rank_sum=Decimal(0),
        )
        for p in participants
    ]

    for criterion in criteria:
        scores = [weighted.get((row.contestant_id, criterion.id), Decimal(0)) for row in rows]
        for row, rank in zip(rows, average_rank(scores)):
            row.criterion_ranks[criterion.id] = rank

    for row in rows:
        row.rank_sum = sum(row.criterion_ranks.values(), Decimal(0))

    for row, rank in zip(rows, rank_by(rows, lambda r: -r.rank_sum)):
        row.rank = rank

    return sorted(rows, key=lambda r: (r.rank, r.code))
