"""集計スナップショットから帳票用のデータを組み立てる（読み取り専用）。"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from .domain import (
    ComputedRoundScore,
    Contestant,
    ContestantSummary,
    Criterion,
    CriterionDetailRow,
    CriterionReport,
    Event,
    EventReport,
    RawScore,
    Round,
    RoundProgress,
    RoundReport,
    WinnerGroup,
)
from .ranking import rank_by, rank_sum, winners
from .tally import TallyEngine


def round_participants(
    event: Event, round_: Round, raw: Sequence[RawScore], computed: Sequence[ComputedRoundScore]
) -> list[Contestant]:
    """そのラウンドに素点がある出場者。素点が無いラウンド（派生のみ）は集計結果から拾う。"""

    ids = {row.contestant_id for row in raw if row.round_id == round_.id}
    if not ids:
        ids = {row.contestant_id for row in computed if row.round_id == round_.id and row.is_total}
    return sorted((c for c in event.contestants if c.id in ids), key=lambda c: c.code)


def _detail_rows(
    criterion: Criterion,
    participants: Sequence[Contestant],
    raw_grid: dict[str, dict[str, dict[str, Decimal]]],
    weighted: dict[tuple[str, str], Decimal],
) -> list[CriterionDetailRow]:
    rows: list[CriterionDetailRow] = []
    for contestant in participants:
        score = weighted.get((contestant.id, criterion.id), Decimal(0))
        judge_values: dict[str, Decimal] = {}
        if criterion.derived:
            # 派生基準は参照元ラウンドの合計を逆算して表示する
            average = score / criterion.weight if criterion.weight_percent > 0 else score
        else:
            for grader_id, by_contestant in raw_grid.items():
                value = by_contestant.get(contestant.id, {}).get(criterion.id)
                if value is not None:
                    judge_values[grader_id] = value
            values = list(judge_values.values())
            average = sum(values, Decimal(0)) / len(values) if values else Decimal(0)
        rows.append(
            CriterionDetailRow(
                contestant_id=contestant.id,
                code=contestant.code,
                name=contestant.name,
                organization=contestant.organization,
                judge_raw_scores=judge_values,
                average_score=average,
                weighted_score=score,
            )
        )

    for row, rank in zip(rows, rank_by(rows, lambda r: r.weighted_score)):
        row.rank = rank
    return sorted(rows, key=lambda r: (r.rank, r.code))


def build_round_report(
    event: Event,
    round_: Round,
    grader_ids: Sequence[str],
    raw: Sequence[RawScore],
    computed: Sequence[ComputedRoundScore],
) -> RoundReport:
    participants = round_participants(event, round_, raw, computed)
    participant_ids = {c.id for c in participants}
    criteria = round_.ordered_criteria()

    raw_grid: dict[str, dict[str, dict[str, Decimal]]] = {
        gid: {c.id: {} for c in participants} for gid in grader_ids
    }
    for row in raw:
        if row.round_id != round_.id or row.contestant_id not in participant_ids:
            continue
        gid = row.judge_id or row.scorer_id
        raw_grid.setdefault(gid, {}).setdefault(row.contestant_id, {})[row.criterion_id] = row.value

    round_rows = [
        row for row in computed if row.round_id == round_.id and row.contestant_id in participant_ids
    ]
    criterion_rows = [row for row in round_rows if not row.is_total]
    weighted = {(row.contestant_id, row.criterion_id): row.score for row in criterion_rows}
    by_id = {c.id: c for c in participants}

    overall = sorted(
        (
            ContestantSummary(
                contestant_id=row.contestant_id,
                code=by_id[row.contestant_id].code,
                name=by_id[row.contestant_id].name,
                organization=by_id[row.contestant_id].organization,
                score=row.score,
                rank=row.rank,
                criteria_breakdown={
                    c.id: weighted[(row.contestant_id, c.id)]
                    for c in criteria
                    if (row.contestant_id, c.id) in weighted
                },
            )
            for row in round_rows
            if row.is_total
        ),
        key=lambda s: (s.rank, s.code),
    )

    report = RoundReport(
        round_id=round_.id,
        round_name=round_.name,
        order=round_.order,
        raw_scores=raw_grid,
        overall=overall,
    )
    if overall:
        report.winners.append(WinnerGroup(award="ROUND CHAMPION", winners=winners(overall)))

    if event.event_type != "criteria":
        return report

    report.rank_sum = rank_sum(participants, criteria, criterion_rows)
    for criterion in criteria:
        rows = _detail_rows(criterion, participants, raw_grid, weighted)
        report.criteria.append(
            CriterionReport(
                criterion_id=criterion.id,
                criterion_name=criterion.name,
                derived=criterion.derived,
                rows=rows,
            )
        )
        best = winners(rows)
        if best:
            report.winners.append(
                WinnerGroup(
                    award=f"Best in {criterion.name}",
                    winners=[
                        ContestantSummary(
                            contestant_id=r.contestant_id,
                            code=r.code,
                            name=r.name,
                            organization=r.organization,
                            score=r.weighted_score,
                            rank=r.rank,
                        )
                        for r in best
                    ],
                )
            )
    return report


def _grader_ids(engine: TallyEngine, event: Event) -> list[str]:
    if event.event_type == "criteria":
        return [j.id for j in engine.store.list_judges(event.id)]
    return [s.id for s in engine.store.list_scorers(event.id)]


def round_report(engine: TallyEngine, event_id: str, round_id: str) -> RoundReport:
    event = engine.require_event(event_id)
    round_ = engine.require_round(event, round_id)
    with engine.event_lock(event_id):
        return build_round_report(
            event,
            round_,
            _grader_ids(engine, event),
            engine.store.list_raw_scores(event_id, round_id),
            engine.store.list_round_scores(event_id, round_id),
        )


def event_report(engine: TallyEngine, event_id: str) -> EventReport:
    event = engine.require_event(event_id)
    with engine.event_lock(event_id):
        grader_ids = _grader_ids(engine, event)
        raw = engine.store.list_raw_scores(event_id)
        computed = engine.store.list_round_scores(event_id)
        rounds = [
            build_round_report(event, r, grader_ids, raw, computed) for r in event.ordered_rounds()
        ]

        by_id = {c.id: c for c in event.contestants}
        overall = sorted(
            (
                ContestantSummary(
                    contestant_id=row.contestant_id,
                    code=by_id[row.contestant_id].code,
                    name=by_id[row.contestant_id].name,
                    organization=by_id[row.contestant_id].organization,
                    score=row.score,
                    rank=row.rank,
                )
                for row in engine.store.list_overall_scores(event_id)
                if row.contestant_id in by_id
            ),
            key=lambda s: (s.rank, s.code),
        )

    champions = winners(overall)
    return EventReport(
        event_id=event.id,
        event_name=event.name,
        event_type=event.event_type,
        rounds=rounds,
        overall=overall,
        overall_winners=WinnerGroup(award="OVERALL CHAMPION", winners=champions) if champions else None,
    )


def round_progress(engine: TallyEngine, event_id: str, round_id: str) -> RoundProgress:
    event = engine.require_event(event_id)
    engine.require_round(event, round_id)
    submitted = {row.grader_key for row in engine.store.list_raw_scores(event_id, round_id)}
    return RoundProgress(
        round_id=round_id,
        submitted=len(submitted),
        registered=len(_grader_ids(engine, event)),
    )
