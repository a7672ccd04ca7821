from __future__ import annotations

from decimal import Decimal

from tally.domain import ComputedRoundScore, Contestant, ContestantSummary, Criterion, now
from tally.ranking import average_rank, rank_by, rank_sum, winners


def D(*values) -> list[Decimal]:
    return [Decimal(str(v)) for v in values]


def test_average_rank_shares_mean_position_on_ties():
    """同点は先頭と末尾の位置の平均順位を共有する（90,90,80 -> 1.5,1.5,3）。"""

    assert average_rank(D(90, 90, 80)) == D(1.5, 1.5, 3)
    assert average_rank(D(80, 90, 90)) == D(3, 1.5, 1.5)


def test_average_rank_tied_run_sums_to_k_times_average():
    """同点区間の順位合計は 区間長 × 平均順位 になり、順位は並び順に単調。"""

    values = D(50, 70, 70, 70, 90, 10, 50, 30)
    ranks = average_rank(values)
    # 90 | 70 70 70 | 50 50 | 30 | 10
    assert ranks == D(5.5, 3, 3, 3, 1, 8, 5.5, 7)
    assert sum(r for v, r in zip(values, ranks) if v == Decimal(70)) == 3 * Decimal(3)
    ordered = sorted(zip(values, ranks), key=lambda x: -x[0])
    assert [r for _, r in ordered] == sorted(ranks)


def test_average_rank_ascending_uses_negated_key():
    """昇順（小さいほど良い）は降順の反転で求める。"""

    assert average_rank(D(3, 3, 5, 1), descending=False) == D(2.5, 2.5, 4, 1)
    assert rank_by(D(3, 3, 5, 1), lambda v: -v) == D(2.5, 2.5, 4, 1)


def test_empty_ranking_set_is_not_a_fault():
    """空集合の順位付けは空を返し、勝者も空。"""

    assert average_rank([]) == []
    assert rank_by([], lambda v: v) == []
    assert winners([]) == []


def _summary(code: str, rank: str) -> ContestantSummary:
    return ContestantSummary(
        contestant_id=code, code=code, name=code, score=Decimal(0), rank=Decimal(rank)
    )


def test_winners_returns_every_row_sharing_best_rank():
    """最小順位の行をすべて返す。単独なら1件、同点なら複数。"""

    assert winners([]) == []

    single = winners([_summary("A", "1"), _summary("B", "2"), _summary("C", "3")])
    assert [w.code for w in single] == ["A"]

    tied = winners([_summary("A", "1.5"), _summary("B", "1.5"), _summary("C", "3")])
    assert [w.code for w in tied] == ["A", "B"]
    assert min(w.rank for w in tied) % 1 != 0


def test_rank_sum_ties_contestants_with_mirrored_criterion_ranks():
    """X が {1,2}、Y が {2,1} なら順位和はともに3で合議順位 1.5。"""

    contestants = [
        Contestant(id="x", code="X", name="X"),
        Contestant(id="y", code="Y", name="Y"),
        Contestant(id="z", code="Z", name="Z"),
    ]
    criteria = [
        Criterion(id="c1", name="Poise", weight_percent=Decimal(50)),
        Criterion(id="c2", name="Talent", weight_percent=Decimal(50)),
    ]
    at = now()

    def row(cid: str, crit: str, score: int) -> ComputedRoundScore:
        return ComputedRoundScore(
            event_id="e", round_id="r", contestant_id=cid, criterion_id=crit,
            score=Decimal(score), computed_at=at,
        )

    scores = [
        row("x", "c1", 40), row("x", "c2", 30),
        row("y", "c1", 35), row("y", "c2", 45),
        row("z", "c1", 10), row("z", "c2", 10),
    ]

    rows = {r.code: r for r in rank_sum(contestants, criteria, scores)}
    assert rows["X"].criterion_ranks == {"c1": Decimal(1), "c2": Decimal(2)}
    assert rows["Y"].criterion_ranks == {"c1": Decimal(2), "c2": Decimal(1)}
    assert rows["X"].rank_sum == rows["Y"].rank_sum == Decimal(3)
    assert rows["X"].rank == rows["Y"].rank == Decimal("1.5")
    assert rows["Z"].rank_sum == Decimal(6)
    assert rows["Z"].rank == Decimal(3)


def test_rank_sum_treats_missing_criterion_score_as_zero():
    """基準の集計行が無い出場者は 0 点として順位付けする。"""

    contestants = [Contestant(id="a", code="A", name="A"), Contestant(id="b", code="B", name="B")]
    criteria = [Criterion(id="c1", name="Poise", weight_percent=Decimal(100))]
    scores = [
        ComputedRoundScore(
            event_id="e", round_id="r", contestant_id="a", criterion_id="c1",
            score=Decimal(5), computed_at=now(),
        )
    ]

    rows = rank_sum(contestants, criteria, scores)
    assert [(r.code, r.rank_sum) for r in rows] == [("A", Decimal(1)), ("B", Decimal(2))]
