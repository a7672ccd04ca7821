from __future__ import annotations

from decimal import Decimal

from tally.domain import TIE_NOTE, ScoreItem
from tally.reports import event_report, round_progress, round_report


def items(**values) -> list[ScoreItem]:
    return [ScoreItem(criteria_name=k.replace("_", " "), score=Decimal(str(v))) for k, v in values.items()]


ROUNDS = [
    {
        "name": "Preliminary",
        "criteria": [
            {"name": "Poise", "weight_percent": 50},
            {"name": "Talent", "weight_percent": 50},
        ],
    },
    {
        "name": "Final",
        "criteria": [
            {"name": "Preliminary Score", "weight_percent": 40, "min_points": -1},
            {"name": "Final QA", "weight_percent": 60},
        ],
    },
]


def _scored_event(engine, store, make_event):
    event = make_event(ROUNDS)
    j1 = store.add_judge(event.id, "Judge 1")
    j2 = store.add_judge(event.id, "Judge 2")
    prelim = event.rounds[0].id
    engine.submit_judge_scores(event.id, j1.id, prelim, "C1", items(Poise=80, Talent=90))
    engine.submit_judge_scores(event.id, j2.id, prelim, "C1", items(Poise=90, Talent=70))
    engine.submit_judge_scores(event.id, j1.id, prelim, "C2", items(Poise=70, Talent=100))
    engine.submit_judge_scores(event.id, j2.id, prelim, "C2", items(Poise=80, Talent=90))
    return event, j1, j2


def test_round_report_builds_judge_grid_and_criterion_details(engine, store, make_event):
    """審査員別素点・基準別明細（平均・加重点・順位）を組み立てる。"""

    event, j1, j2 = _scored_event(engine, store, make_event)
    prelim = event.rounds[0]
    c1 = event.contestant_by_code("C1")
    poise = prelim.criterion_by_name("Poise")

    report = round_report(engine, event.id, prelim.id)

    assert [s.code for s in report.overall] == ["C2", "C1"]
    assert report.raw_scores[j1.id][c1.id][poise.id] == Decimal(80)
    assert report.raw_scores[j2.id][c1.id][poise.id] == Decimal(90)

    poise_rows = {r.code: r for r in report.criteria[0].rows}
    assert report.criteria[0].criterion_name == "Poise"
    assert poise_rows["C1"].judge_raw_scores == {j1.id: Decimal(80), j2.id: Decimal(90)}
    assert poise_rows["C1"].average_score == Decimal(85)
    assert poise_rows["C1"].weighted_score == Decimal("42.5")
    assert poise_rows["C1"].rank == Decimal(1)
    assert poise_rows["C2"].rank == Decimal(2)


def test_round_report_rank_sum_and_winners(engine, store, make_event):
    """合議順位と、ラウンド優勝・基準別優勝をまとめる。"""

    event, _, _ = _scored_event(engine, store, make_event)
    report = round_report(engine, event.id, event.rounds[0].id)

    # C1: Poise 1位 / Talent 2位、C2: Poise 2位 / Talent 1位
    assert [(r.code, r.rank_sum, r.rank) for r in report.rank_sum] == [
        ("C1", Decimal(3), Decimal("1.5")),
        ("C2", Decimal(3), Decimal("1.5")),
    ]

    awards = {g.award: g for g in report.winners}
    assert [w.code for w in awards["ROUND CHAMPION"].winners] == ["C2"]
    assert awards["ROUND CHAMPION"].tie is False
    assert awards["ROUND CHAMPION"].note is None
    assert [w.code for w in awards["Best in Poise"].winners] == ["C1"]
    assert [w.code for w in awards["Best in Talent"].winners] == ["C2"]


def test_tied_winners_carry_disclaimer(engine, store, make_event):
    """優勝が同点なら複数名を返し、注意書きを付ける。"""

    event = make_event([{"name": "Solo", "criteria": [{"name": "Voice", "weight_percent": 100}]}])
    judge = store.add_judge(event.id, "Judge 1")
    round_id = event.rounds[0].id
    engine.submit_judge_scores(event.id, judge.id, round_id, "C1", items(Voice=95))
    engine.submit_judge_scores(event.id, judge.id, round_id, "C2", items(Voice=95))

    champion = round_report(engine, event.id, round_id).winners[0]
    assert [w.code for w in champion.winners] == ["C1", "C2"]
    assert champion.tie is True
    assert champion.note == TIE_NOTE


def test_derived_round_participants_and_source_total(engine, store, make_event):
    """素点の無い派生ラウンドは集計結果から出場者を拾い、明細には参照元合計を出す。"""

    event, _, _ = _scored_event(engine, store, make_event)
    final = event.rounds[1]

    report = round_report(engine, event.id, final.id)
    # 派生のみのラウンドなので、集計行を持つ全アクティブ出場者が対象
    assert [c.code for c in report.rank_sum] == ["C2", "C1", "C3"]

    carry = next(c for c in report.criteria if c.criterion_name == "Preliminary Score")
    assert carry.derived is True
    rows = {r.code: r for r in carry.rows}
    # C1 の Preliminary 合計 = Poise 85 × 0.5 + Talent 80 × 0.5 = 82.5
    assert rows["C1"].average_score == Decimal("82.5")
    assert rows["C1"].weighted_score == Decimal("33")
    assert rows["C1"].judge_raw_scores == {}
    assert rows["C3"].weighted_score == Decimal(0)


def test_event_report_lists_rounds_in_order_with_overall_champion(engine, store, make_event):
    """イベント帳票はラウンド順に並び、総合優勝を含む。"""

    event, _, _ = _scored_event(engine, store, make_event)
    report = event_report(engine, event.id)

    assert [r.round_name for r in report.rounds] == ["Preliminary", "Final"]
    assert [s.code for s in report.overall][:2] == ["C2", "C1"]
    assert report.overall_winners is not None
    assert [w.code for w in report.overall_winners.winners] == ["C2"]


def test_orw_round_report_has_no_criterion_sections(engine, store, make_event):
    """正誤方式では基準別明細と合議順位を作らない。"""

    event = make_event(
        [{"name": "Quiz", "criteria": [{"name": "Points", "weight_percent": 0}]}], event_type="orw"
    )
    scorer = store.add_scorer(event.id, "Scorer 1")
    round_id = event.rounds[0].id
    engine.submit_scorer_scores(event.id, scorer.id, round_id, "C1", items(Points=5))

    report = round_report(engine, event.id, round_id)
    assert report.criteria == []
    assert report.rank_sum == []
    assert [s.code for s in report.overall] == ["C1"]
    assert list(report.raw_scores) == [scorer.id]


def test_round_progress_counts_distinct_graders(engine, store, make_event):
    """提出済みの審査員数と登録数を返す。"""

    event = make_event(ROUNDS)
    j1 = store.add_judge(event.id, "Judge 1")
    store.add_judge(event.id, "Judge 2")
    prelim = event.rounds[0].id

    engine.submit_judge_scores(event.id, j1.id, prelim, "C1", items(Poise=80))
    engine.submit_judge_scores(event.id, j1.id, prelim, "C2", items(Poise=80))

    progress = round_progress(engine, event.id, prelim)
    assert (progress.submitted, progress.registered, progress.complete) == (1, 2, False)
