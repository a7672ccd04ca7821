from __future__ import annotations

import logging
import os
import threading
import weakref
from collections import defaultdict
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import get_args

from .domain import (
    MAX_BULK_SUBMISSIONS,
    ComputedRoundScore,
    Contestant,
    ContestantScoreSubmission,
    Event,
    EventType,
    OverallScore,
    OverallTallyReport,
    RawScore,
    Round,
    RoundTallyReport,
    ScoreItem,
    TallyRow,
    UnknownCriterionPolicy,
    grader_key,
    now,
)
from .errors import NotFoundError, ScoringModeError, SubmissionTooLargeError, UnknownCriterionError
from .ranking import average_rank
from .resolver import CriterionPlan, derivation_order, plan_round
from .store import Store

logger = logging.getLogger(__name__)

# (round_id, contestant_id) -> ラウンド合計
Totals = dict[tuple[str, str], Decimal]
RoundStrategy = Callable[
    [Sequence[CriterionPlan], Sequence[RawScore], str, Totals],
    tuple[Decimal, dict[str, Decimal]],
]


def _criteria_round(
    plans: Sequence[CriterionPlan], raw: Sequence[RawScore], contestant_id: str, totals: Totals
) -> tuple[Decimal, dict[str, Decimal]]:
    """加重平均方式: 基準ごとに (審査員平均 or 参照ラウンド合計) × 重み。"""

    values_by_criterion: dict[str, list[Decimal]] = defaultdict(list)
    for row in raw:
        values_by_criterion[row.criterion_id].append(row.value)

    total = Decimal(0)
    breakdown: dict[str, Decimal] = {}
    for plan in plans:
        criterion = plan.criterion
        weighted = Decimal(0)
        if plan.derived:
            if plan.source_round is not None:
                source_total = totals.get((plan.source_round.id, contestant_id))
                if source_total is not None:
                    weighted = source_total * criterion.weight
        else:
            values = values_by_criterion.get(criterion.id)
            if values:
                weighted = sum(values, Decimal(0)) / len(values) * criterion.weight
        breakdown[criterion.id] = weighted
        total += weighted
    return total, breakdown


def _orw_round(
    plans: Sequence[CriterionPlan], raw: Sequence[RawScore], contestant_id: str, totals: Totals
) -> tuple[Decimal, dict[str, Decimal]]:
    """正誤方式: 素点をそのまま合計する。基準ごとの内訳は持たない。"""

    return sum((row.value for row in raw), Decimal(0)), {}


_ROUND_STRATEGIES: dict[EventType, RoundStrategy] = {
    "criteria": _criteria_round,
    "orw": _orw_round,
}


def tally_round(
    event: Event, round_: Round, raw_scores: Sequence[RawScore], totals: Totals
) -> list[ComputedRoundScore]:
    """1ラウンド分の集計行（合計行 + 基準別行）をメモリ上で組み立てる。

    素点が無く、かつ非アクティブな出場者は除外する。
    """

    strategy = _ROUND_STRATEGIES[event.event_type]
    plans = plan_round(round_, event.rounds) if event.event_type == "criteria" else []

    raw_by_contestant: dict[str, list[RawScore]] = defaultdict(list)
    for row in raw_scores:
        if row.round_id == round_.id:
            raw_by_contestant[row.contestant_id].append(row)

    results: list[tuple[Contestant, Decimal, dict[str, Decimal]]] = []
    for contestant in event.contestants:
        raw = raw_by_contestant.get(contestant.id, [])
        if not raw and not contestant.is_active:
            continue
        total, breakdown = strategy(plans, raw, contestant.id, totals)
        results.append((contestant, total, breakdown))

    computed_at = now()
    ranks = average_rank([total for _, total, _ in results])
    rows: list[ComputedRoundScore] = []
    for (contestant, total, breakdown), rank in zip(results, ranks):
        rows.append(
            ComputedRoundScore(
                event_id=event.id,
                round_id=round_.id,
                contestant_id=contestant.id,
                criterion_id=None,
                score=total,
                rank=rank,
                computed_at=computed_at,
            )
        )
        for criterion_id, weighted in breakdown.items():
            rows.append(
                ComputedRoundScore(
                    event_id=event.id,
                    round_id=round_.id,
                    contestant_id=contestant.id,
                    criterion_id=criterion_id,
                    score=weighted,
                    rank=Decimal(0),
                    computed_at=computed_at,
                )
            )
    return rows


def _tally_rows(event: Event, scored: Sequence[tuple[str, Decimal, Decimal]]) -> list[TallyRow]:
    by_id = {c.id: c for c in event.contestants}
    rows = []
    for contestant_id, score, rank in scored:
        contestant = by_id.get(contestant_id)
        rows.append(
            TallyRow(
                contestant_name=contestant.name if contestant else "Unknown",
                contestant_code=contestant.code if contestant else "Unknown",
                total_score=score,
                rank=rank,
            )
        )
    return sorted(rows, key=lambda r: (r.rank, r.contestant_code))


@dataclass
class TallyEngine:
    store: Store
    unknown_criterion: UnknownCriterionPolicy = "reject"
    # 使用中のイベントの分だけ保持し、解放されたロックは回収される
    _locks: weakref.WeakValueDictionary = field(default_factory=weakref.WeakValueDictionary, repr=False)
    _locks_guard: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _held: threading.local = field(default_factory=threading.local, repr=False)

    @contextmanager
    def event_lock(self, event_id: str) -> Iterator[None]:
        """同一イベントの再計算を直列化する。

        プロセス内はイベントごとの RLock、プロセス間はストアのロックで守る。
        入れ子で呼ばれた場合は外側で取ったストアのロックをそのまま使う。
        """

        with self._locks_guard:
            lock = self._locks.get(event_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[event_id] = lock
        with lock:
            held: set[str] = self._held.__dict__.setdefault("events", set())
            if event_id in held:
                yield
                return
            held.add(event_id)
            try:
                with self.store.event_lock(event_id):
                    yield
            finally:
                held.discard(event_id)

    # --- lookups ---

    def require_event(self, event_id: str) -> Event:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError("event", event_id)
        return event

    @staticmethod
    def require_round(event: Event, round_id: str) -> Round:
        round_ = event.get_round(round_id)
        if round_ is None:
            raise NotFoundError("round", round_id)
        return round_

    @staticmethod
    def require_contestant(event: Event, code: str) -> Contestant:
        contestant = event.contestant_by_code(code)
        if contestant is None:
            raise NotFoundError("contestant", code)
        return contestant

    # --- submissions ---

    def submit_judge_scores(
        self,
        event_id: str,
        judge_id: str,
        round_id: str,
        contestant_code: str,
        scores: list[ScoreItem],
    ) -> RoundTallyReport:
        return self.submit_judge_round(
            event_id,
            judge_id,
            round_id,
            [ContestantScoreSubmission(contestant_code=contestant_code, scores=scores)],
        )

    def submit_judge_round(
        self,
        event_id: str,
        judge_id: str,
        round_id: str,
        submissions: list[ContestantScoreSubmission],
    ) -> RoundTallyReport:
        event = self.require_event(event_id)
        round_ = self.require_round(event, round_id)
        if self.store.get_judge(event_id, judge_id) is None:
            raise NotFoundError("judge", judge_id)
        if event.event_type != "criteria":
            raise ScoringModeError("judges can only submit to criteria events")
        return self._submit(event, round_, submissions, judge_id=judge_id)

    def submit_scorer_scores(
        self,
        event_id: str,
        scorer_id: str,
        round_id: str,
        contestant_code: str,
        scores: list[ScoreItem],
    ) -> RoundTallyReport:
        event = self.require_event(event_id)
        round_ = self.require_round(event, round_id)
        if self.store.get_scorer(event_id, scorer_id) is None:
            raise NotFoundError("scorer", scorer_id)
        if event.event_type != "orw":
            raise ScoringModeError("scorers can only submit to orw events")
        submission = ContestantScoreSubmission(contestant_code=contestant_code, scores=scores)
        return self._submit(event, round_, [submission], scorer_id=scorer_id)

    def start_round(self, event_id: str, round_id: str, contestant_codes: list[str]) -> Event:
        """指定した出場者だけをアクティブにしてラウンドを始め、依存ラウンドごと再計算する。

        外れた出場者は過去ラウンドの集計を残したまま、素点の無いラウンドからは除外される。
        """

        event = self.require_event(event_id)
        round_ = self.require_round(event, round_id)
        selected = {self.require_contestant(event, code).id for code in contestant_codes}
        with self.event_lock(event_id):
            derivation_order(event, round_id)
            event = self.store.set_active_contestants(event_id, selected)
            logger.info(
                "started round %r of event %s with %d of %d contestant(s) active",
                round_.name,
                event_id,
                len(selected),
                len(event.contestants),
            )
            self.recompute(event_id, round_id)
        return event

    def _submit(
        self,
        event: Event,
        round_: Round,
        submissions: list[ContestantScoreSubmission],
        *,
        judge_id: str | None = None,
        scorer_id: str | None = None,
    ) -> RoundTallyReport:
        if len(submissions) > MAX_BULK_SUBMISSIONS:
            raise SubmissionTooLargeError(len(submissions), MAX_BULK_SUBMISSIONS)
        # 書き込み前に送信全体を検証する（不正なら何も記録しない）
        created_at = now()
        batches: dict[str, list[RawScore]] = {}
        for submission in submissions:
            contestant = self.require_contestant(event, submission.contestant_code)
            rows: list[RawScore] = []
            for item in submission.scores:
                criterion = round_.criterion_by_name(item.criteria_name)
                if criterion is None:
                    if self.unknown_criterion == "reject":
                        raise UnknownCriterionError(item.criteria_name, round_.name)
                    logger.warning(
                        "skipping unknown criterion %r for %s in round %r",
                        item.criteria_name,
                        contestant.code,
                        round_.name,
                    )
                    continue
                rows.append(
                    RawScore(
                        event_id=event.id,
                        round_id=round_.id,
                        contestant_id=contestant.id,
                        criterion_id=criterion.id,
                        judge_id=judge_id,
                        scorer_id=scorer_id,
                        value=item.score,
                        created_at=created_at,
                    )
                )
            batches[contestant.id] = rows

        grader = grader_key(judge_id=judge_id, scorer_id=scorer_id)
        with self.event_lock(event.id):
            derivation_order(event, round_.id)
            self.store.replace_raw_scores(event.id, round_.id, grader, batches)
            logger.info(
                "recorded scores from %s for %d contestant(s) in round %r of event %s",
                grader,
                len(batches),
                round_.name,
                event.id,
            )
            return self.recompute(event.id, round_.id)

    # --- recomputation ---

    def _load_totals(self, event_id: str) -> Totals:
        return {
            (row.round_id, row.contestant_id): row.score
            for row in self.store.list_round_scores(event_id)
            if row.is_total
        }

    def _compute_round(self, event: Event, round_: Round, totals: Totals) -> None:
        rows = tally_round(event, round_, self.store.list_raw_scores(event.id, round_.id), totals)
        self.store.replace_round_snapshot(event.id, round_.id, rows)

        for key in [k for k in totals if k[0] == round_.id]:
            del totals[key]
        totals.update({(row.round_id, row.contestant_id): row.score for row in rows if row.is_total})
        logger.info(
            "computed round %r of event %s (%s, %d contestant(s))",
            round_.name,
            event.id,
            event.event_type,
            sum(1 for row in rows if row.is_total),
        )

    def _round_report(self, event: Event, round_: Round) -> RoundTallyReport:
        persisted = [row for row in self.store.list_round_scores(event.id, round_.id) if row.is_total]
        return RoundTallyReport(
            round_name=round_.name,
            scores=_tally_rows(event, [(r.contestant_id, r.score, r.rank) for r in persisted]),
        )

    def compute_round_tally(self, event_id: str, round_id: str) -> RoundTallyReport:
        """1ラウンドだけを再計算する。派生元は保存済みの集計結果を使う。"""

        event = self.require_event(event_id)
        round_ = self.require_round(event, round_id)
        with self.event_lock(event_id):
            derivation_order(event, round_id)
            self._compute_round(event, round_, self._load_totals(event_id))
            return self._round_report(event, round_)

    def recompute(self, event_id: str, round_id: str) -> RoundTallyReport:
        """ラウンドとそれに依存する派生ラウンドを順に再計算し、最後に総合集計を更新する。"""

        event = self.require_event(event_id)
        round_ = self.require_round(event, round_id)
        with self.event_lock(event_id):
            order = derivation_order(event, round_id)
            totals = self._load_totals(event_id)
            for r in order:
                self._compute_round(event, r, totals)
            if len(order) > 1:
                logger.info(
                    "cascaded recomputation from round %r to %s",
                    round_.name,
                    [r.name for r in order[1:]],
                )
            self.compute_overall_tally(event_id)
            return self._round_report(event, round_)

    def compute_overall_tally(self, event_id: str) -> OverallTallyReport:
        event = self.require_event(event_id)
        with self.event_lock(event_id):
            round_ids = {r.id for r in event.rounds}
            sums: dict[str, Decimal] = defaultdict(Decimal)
            for row in self.store.list_round_scores(event_id):
                if row.is_total and row.round_id in round_ids:
                    sums[row.contestant_id] += row.score

            scores = [sums.get(c.id, Decimal(0)) for c in event.contestants]
            computed_at = now()
            rows = [
                OverallScore(
                    event_id=event_id,
                    contestant_id=contestant.id,
                    score=score,
                    rank=rank,
                    computed_at=computed_at,
                )
                for contestant, score, rank in zip(event.contestants, scores, average_rank(scores))
            ]
            self.store.replace_overall_scores(event_id, rows)
            logger.info("computed overall tally of event %s (%d contestant(s))", event_id, len(rows))

            persisted = self.store.list_overall_scores(event_id)
            return OverallTallyReport(
                scores=_tally_rows(event, [(r.contestant_id, r.score, r.rank) for r in persisted])
            )


def build_engine(store: Store) -> TallyEngine:
    policy = os.environ.get("UNKNOWN_CRITERION_POLICY", "reject").strip().lower()
    if policy not in get_args(UnknownCriterionPolicy):
        raise RuntimeError(f"UNKNOWN_CRITERION_POLICY must be one of {get_args(UnknownCriterionPolicy)}")
    return TallyEngine(store=store, unknown_criterion=policy)
