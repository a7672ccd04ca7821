from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .domain import Criterion, Event, Round
from .errors import DerivationCycleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CriterionPlan:
    criterion: Criterion
    derived: bool
    source_round: Round | None = None


def resolve_source_round(round_: Round, criterion: Criterion, rounds: Sequence[Round]) -> Round | None:
    """派生基準の参照元ラウンドを決める。

    優先順位:
      1. derived_from_round_id による明示リンク
      2. 基準名に他ラウンド名が含まれる（大文字小文字無視）もののうち order 最大
      3. フラグ / MinPoints == -1 で派生扱いなら直前の order のラウンド
    どれにも当たらなければ None（加重点は 0 として扱う）。
    """

    if criterion.derived_from_round_id is not None:
        linked = next((r for r in rounds if r.id == criterion.derived_from_round_id), None)
        if linked is not None:
            return linked

    name = criterion.name.lower()
    matches = [r for r in rounds if r.id != round_.id and r.name.lower() in name]
    if matches:
        return max(matches, key=lambda r: r.order)

    if criterion.derived_by_convention:
        earlier = [r for r in rounds if r.order < round_.order]
        if earlier:
            return max(earlier, key=lambda r: r.order)

    return None


def plan_round(round_: Round, rounds: Sequence[Round]) -> list[CriterionPlan]:
    """ラウンドの各基準について派生判定と参照元解決を一度だけ行う。"""

    plans: list[CriterionPlan] = []
    for criterion in round_.ordered_criteria():
        if not criterion.derived:
            plans.append(CriterionPlan(criterion=criterion, derived=False))
            continue
        source = resolve_source_round(round_, criterion, rounds)
        if source is None:
            logger.debug("derived criterion %r in round %r has no source round", criterion.name, round_.name)
        else:
            logger.debug("derived criterion %r in round %r <- %r", criterion.name, round_.name, source.name)
        plans.append(CriterionPlan(criterion=criterion, derived=True, source_round=source))
    return plans


def source_rounds(round_: Round, rounds: Sequence[Round]) -> set[str]:
    return {
        plan.source_round.id
        for plan in plan_round(round_, rounds)
        if plan.derived and plan.source_round is not None
    }


def derivation_order(event: Event, round_id: str) -> list[Round]:
    """round_id のラウンドと、それに（推移的に）依存するラウンドを計算順で返す。

    派生関係に循環があれば DerivationCycleError。
    """

    rounds = event.ordered_rounds()
    by_id = {r.id: r for r in rounds}
    if event.event_type != "criteria":
        return [by_id[round_id]]

    deps = {r.id: source_rounds(r, rounds) for r in rounds}

    topo: list[str] = []
    state: dict[str, int] = {}  # 1: visiting, 2: done
    path: list[str] = []

    def visit(rid: str) -> None:
        if state.get(rid) == 2:
            return
        if state.get(rid) == 1:
            cycle = path[path.index(rid):] + [rid]
            raise DerivationCycleError([by_id[x].name for x in cycle])
        state[rid] = 1
        path.append(rid)
        for dep in sorted(deps[rid], key=lambda x: by_id[x].order):
            visit(dep)
        path.pop()
        state[rid] = 2
        topo.append(rid)

    for r in rounds:
        visit(r.id)

    affected = {round_id}
    for rid in topo:
        if deps[rid] & affected:
            affected.add(rid)

    return [by_id[rid] for rid in topo if rid in affected]
