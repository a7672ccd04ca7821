from __future__ import annotations

from decimal import Decimal

import pytest

from tally.domain import ComputedRoundScore, CreateEventRequest, RawScore, now
from tally.store import InMemoryStore, build_store


def _event(store: InMemoryStore, name: str = "t"):
    return store.create_event(
        CreateEventRequest(
            name=name,
            rounds=[
                {"name": "Preliminary", "criteria": [{"name": "Poise", "weight_percent": 100}]},
                {
                    "name": "Final",
                    "criteria": [
                        {"name": "Carry", "weight_percent": 30, "derived_from_round": "Preliminary"},
                        {"name": "QA", "weight_percent": 70},
                    ],
                },
            ],
            contestants=[{"code": "C1", "name": "A"}],
        )
    )


def test_create_event_assigns_ids_order_and_source_links():
    """ラウンド順・表示順の既定値と派生元ラウンドのID解決。"""

    store = InMemoryStore.create()
    event = _event(store)

    prelim, final = event.rounds
    assert (prelim.order, final.order) == (1, 2)
    assert [c.display_order for c in final.criteria] == [1, 2]
    assert final.criteria[0].derived_from_round_id == prelim.id
    assert final.criteria[0].is_derived is True
    assert final.criteria[1].is_derived is False
    assert store.get_event(event.id) == event


def test_add_judge_rejects_duplicate_name_within_event():
    """同一イベント内で同名の審査員は登録できない。"""

    store = InMemoryStore.create()
    event = _event(store)

    store.add_judge(event.id, "  Judge A  ")

    with pytest.raises(ValueError):
        store.add_judge(event.id, "Judge A")


def test_add_judge_allows_same_name_in_different_events():
    """別イベントなら同名の審査員・採点者を登録できる。"""

    store = InMemoryStore.create()
    event1 = _event(store, "t1")
    event2 = _event(store, "t2")

    store.add_judge(event1.id, "Judge A")
    store.add_judge(event2.id, "Judge A")
    store.add_scorer(event1.id, "Judge A")

    assert [j.name for j in store.list_judges(event1.id)] == ["Judge A"]
    assert [s.name for s in store.list_scorers(event2.id)] == []


def test_replace_raw_scores_is_scoped_to_contestant_grader_round_key():
    """素点の置き換えは出場者×審査員×ラウンド単位。空リストは削除。"""

    store = InMemoryStore.create()
    event = _event(store)
    round_id = event.rounds[0].id
    criterion_id = event.rounds[0].criteria[0].id

    def raw(contestant_id: str, judge_id: str, value: int) -> RawScore:
        return RawScore(
            event_id=event.id, round_id=round_id, contestant_id=contestant_id,
            criterion_id=criterion_id, judge_id=judge_id, value=Decimal(value), created_at=now(),
        )

    store.replace_raw_scores(event.id, round_id, "J#j1", {"c1": [raw("c1", "j1", 70)], "c2": [raw("c2", "j1", 60)]})
    store.replace_raw_scores(event.id, round_id, "J#j2", {"c1": [raw("c1", "j2", 50)]})
    store.replace_raw_scores(event.id, round_id, "J#j1", {"c1": [raw("c1", "j1", 90)], "c2": []})

    values = sorted((r.contestant_id, r.judge_id, r.value) for r in store.list_raw_scores(event.id))
    assert values == [("c1", "j1", Decimal(90)), ("c1", "j2", Decimal(50))]
    assert store.list_raw_scores(event.id, event.rounds[1].id) == []


def test_round_snapshot_is_replaced_wholesale():
    """ラウンド集計は丸ごと置き換わり、他ラウンドには触れない。"""

    store = InMemoryStore.create()
    event = _event(store)
    r1, r2 = (r.id for r in event.rounds)

    def total(round_id: str, contestant_id: str, score: int) -> ComputedRoundScore:
        return ComputedRoundScore(
            event_id=event.id, round_id=round_id, contestant_id=contestant_id,
            score=Decimal(score), rank=Decimal(1), computed_at=now(),
        )

    store.replace_round_snapshot(event.id, r1, [total(r1, "a", 1), total(r1, "b", 2)])
    store.replace_round_snapshot(event.id, r2, [total(r2, "a", 3)])
    store.replace_round_snapshot(event.id, r1, [total(r1, "c", 4)])

    assert [r.contestant_id for r in store.list_round_scores(event.id, r1)] == ["c"]
    assert len(store.list_round_scores(event.id)) == 2


def test_build_store_defaults_to_inmemory(monkeypatch):
    """STORE_BACKEND 未指定ならインメモリ、dynamodb ならテーブル名が必須。"""

    monkeypatch.delenv("STORE_BACKEND", raising=False)
    assert isinstance(build_store(), InMemoryStore)

    monkeypatch.setenv("STORE_BACKEND", "dynamodb")
    monkeypatch.delenv("DDB_TABLE_NAME", raising=False)
    with pytest.raises(RuntimeError):
        build_store()
