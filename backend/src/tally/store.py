from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Protocol

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError
from pydantic import TypeAdapter

from .domain import (
    MAX_BULK_SUBMISSIONS,
    ComputedRoundScore,
    Contestant,
    CreateEventRequest,
    Criterion,
    Event,
    Judge,
    OverallScore,
    RawScore,
    Round,
    Scorer,
    new_id,
    now,
)
from .errors import EventBusyError, NotFoundError, SnapshotTooLargeError, SubmissionTooLargeError

logger = logging.getLogger(__name__)


class Store(Protocol):
    def create_event(self, req: CreateEventRequest) -> Event: ...

    def get_event(self, event_id: str) -> Event | None: ...

    def set_active_contestants(self, event_id: str, contestant_ids: set[str]) -> Event: ...

    def event_lock(self, event_id: str) -> AbstractContextManager[None]: ...

    def add_judge(self, event_id: str, name: str) -> Judge: ...

    def get_judge(self, event_id: str, judge_id: str) -> Judge | None: ...

    def list_judges(self, event_id: str) -> list[Judge]: ...

    def add_scorer(self, event_id: str, name: str) -> Scorer: ...

    def get_scorer(self, event_id: str, scorer_id: str) -> Scorer | None: ...

    def list_scorers(self, event_id: str) -> list[Scorer]: ...

    def replace_raw_scores(
        self,
        event_id: str,
        round_id: str,
        grader: str,
        scores_by_contestant: dict[str, list[RawScore]],
    ) -> None: ...

    def list_raw_scores(self, event_id: str, round_id: str | None = None) -> list[RawScore]: ...

    def replace_round_snapshot(
        self, event_id: str, round_id: str, rows: list[ComputedRoundScore]
    ) -> None: ...

    def list_round_scores(
        self, event_id: str, round_id: str | None = None
    ) -> list[ComputedRoundScore]: ...

    def replace_overall_scores(self, event_id: str, rows: list[OverallScore]) -> None: ...

    def list_overall_scores(self, event_id: str) -> list[OverallScore]: ...


def build_event(req: CreateEventRequest) -> Event:
    round_ids = {spec.name: new_id("rnd") for spec in req.rounds}
    rounds: list[Round] = []
    for idx, spec in enumerate(req.rounds, start=1):
        criteria = [
            Criterion(
                id=new_id("crt"),
                name=c.name,
                weight_percent=c.weight_percent,
                display_order=c.display_order if c.display_order is not None else pos,
                # 派生元ラウンドの指定は派生扱いを意味する
                is_derived=c.is_derived or c.derived_from_round is not None,
                derived_from_round_id=round_ids[c.derived_from_round] if c.derived_from_round else None,
                min_points=c.min_points,
                max_points=c.max_points,
            )
            for pos, c in enumerate(spec.criteria, start=1)
        ]
        rounds.append(
            Round(
                id=round_ids[spec.name],
                name=spec.name,
                order=spec.order if spec.order is not None else idx,
                criteria=criteria,
            )
        )
    contestants = [
        Contestant(
            id=new_id("con"),
            code=c.code,
            name=c.name,
            organization=c.organization.strip(),
            is_active=c.is_active,
        )
        for c in req.contestants
    ]
    return Event(
        id=new_id("evt"),
        name=req.name,
        event_type=req.event_type,
        rounds=rounds,
        contestants=contestants,
        created_at=now(),
    )


@dataclass
class InMemoryStore(Store):
    events: dict[str, Event]
    judges: dict[tuple[str, str], Judge]
    scorers: dict[tuple[str, str], Scorer]
    # (event_id, round_id, contestant_id, grader_key) -> rows
    raw_scores: dict[tuple[str, str, str, str], list[RawScore]]
    round_scores: dict[tuple[str, str], list[ComputedRoundScore]]
    overall_scores: dict[str, list[OverallScore]]
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def create(cls) -> "InMemoryStore":
        return cls(
            events={}, judges={}, scorers={}, raw_scores={}, round_scores={}, overall_scores={}
        )

    def create_event(self, req: CreateEventRequest) -> Event:
        event = build_event(req)
        with self._lock:
            self.events[event.id] = event
        return event

    def get_event(self, event_id: str) -> Event | None:
        return self.events.get(event_id)

    def set_active_contestants(self, event_id: str, contestant_ids: set[str]) -> Event:
        with self._lock:
            event = self.events.get(event_id)
            if event is None:
                raise NotFoundError("event", event_id)
            event = event.with_active(contestant_ids)
            self.events[event_id] = event
        return event

    def event_lock(self, event_id: str) -> AbstractContextManager[None]:
        # 1プロセス内だけで使うので TallyEngine の RLock で足りる
        return nullcontext()

    def add_judge(self, event_id: str, name: str) -> Judge:
        name = name.strip()
        with self._lock:
            if any(j.name == name for (eid, _), j in self.judges.items() if eid == event_id):
                raise ValueError(f"judge {name!r} already exists in event")
            judge = Judge(id=new_id("jdg"), event_id=event_id, name=name)
            self.judges[(event_id, judge.id)] = judge
        return judge

    def get_judge(self, event_id: str, judge_id: str) -> Judge | None:
        return self.judges.get((event_id, judge_id))

    def list_judges(self, event_id: str) -> list[Judge]:
        return [j for (eid, _), j in self.judges.items() if eid == event_id]

    def add_scorer(self, event_id: str, name: str) -> Scorer:
        name = name.strip()
        with self._lock:
            if any(s.name == name for (eid, _), s in self.scorers.items() if eid == event_id):
                raise ValueError(f"scorer {name!r} already exists in event")
            scorer = Scorer(id=new_id("scr"), event_id=event_id, name=name)
            self.scorers[(event_id, scorer.id)] = scorer
        return scorer

    def get_scorer(self, event_id: str, scorer_id: str) -> Scorer | None:
        return self.scorers.get((event_id, scorer_id))

    def list_scorers(self, event_id: str) -> list[Scorer]:
        return [s for (eid, _), s in self.scorers.items() if eid == event_id]

    def replace_raw_scores(
        self,
        event_id: str,
        round_id: str,
        grader: str,
        scores_by_contestant: dict[str, list[RawScore]],
    ) -> None:
        with self._lock:
            for contestant_id, rows in scores_by_contestant.items():
                key = (event_id, round_id, contestant_id, grader)
                if rows:
                    self.raw_scores[key] = list(rows)
                else:
                    self.raw_scores.pop(key, None)

    def list_raw_scores(self, event_id: str, round_id: str | None = None) -> list[RawScore]:
        with self._lock:
            items = list(self.raw_scores.items())
        return [
            row
            for (eid, rid, _cid, _grader), rows in items
            if eid == event_id and (round_id is None or rid == round_id)
            for row in rows
        ]

    def replace_round_snapshot(
        self, event_id: str, round_id: str, rows: list[ComputedRoundScore]
    ) -> None:
        with self._lock:
            self.round_scores[(event_id, round_id)] = list(rows)

    def list_round_scores(
        self, event_id: str, round_id: str | None = None
    ) -> list[ComputedRoundScore]:
        with self._lock:
            items = list(self.round_scores.items())
        return [
            row
            for (eid, rid), rows in items
            if eid == event_id and (round_id is None or rid == round_id)
            for row in rows
        ]

    def replace_overall_scores(self, event_id: str, rows: list[OverallScore]) -> None:
        with self._lock:
            self.overall_scores[event_id] = list(rows)

    def list_overall_scores(self, event_id: str) -> list[OverallScore]:
        with self._lock:
            return list(self.overall_scores.get(event_id, []))


_RAW_ROWS = TypeAdapter(list[RawScore])
_ROUND_ROWS = TypeAdapter(list[ComputedRoundScore])
_OVERALL_ROWS = TypeAdapter(list[OverallScore])
_SERIALIZER = TypeSerializer()

# DynamoDB のアイテム上限 400KB からキー・属性名の分を引いた doc の上限
_MAX_DOC_BYTES = 399 * 1024


def _attrs(item: dict) -> dict:
    return {k: _SERIALIZER.serialize(v) for k, v in item.items()}


def _conditional_failed(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


@dataclass
class DynamoDBStore(Store):
    """1イベント1パーティションで保存する。

    集計結果はラウンド単位で1アイテムにまとめるので、put_item 1回で全置換になる。
    1ラウンドの集計 doc は 400KB のアイテム上限に収まる必要がある
    （目安: 出場者 100 名 × 基準 10 件程度まで）。超える場合は SnapshotTooLargeError。
    複数コンテナからの再計算は LOCK アイテムのリースで直列化する。
    """

    table_name: str
    lock_ttl_seconds: int = 60
    lock_wait_seconds: float = 30.0
    lock_poll_seconds: float = 0.2

    @classmethod
    def from_env(cls) -> "DynamoDBStore":
        table_name = os.environ.get("DDB_TABLE_NAME", "")
        if not table_name:
            raise RuntimeError("DDB_TABLE_NAME is required for dynamodb store")
        return cls(
            table_name=table_name,
            lock_ttl_seconds=int(os.environ.get("DDB_LOCK_TTL_SECONDS", "60")),
            lock_wait_seconds=float(os.environ.get("DDB_LOCK_WAIT_SECONDS", "30")),
        )

    @property
    def _table(self):
        ddb = boto3.resource("dynamodb")
        return ddb.Table(self.table_name)

    @property
    def _client(self):
        return boto3.client("dynamodb")

    @contextmanager
    def event_lock(self, event_id: str) -> Iterator[None]:
        """LOCK アイテムを条件付きで書き込み、期限付きのリースを取る。"""

        key = {"pk": f"EVENT#{event_id}", "sk": "LOCK"}
        owner = new_id("lck")
        deadline = time.monotonic() + self.lock_wait_seconds
        while True:
            issued = int(time.time())
            try:
                self._table.put_item(
                    Item={**key, "owner": owner, "expires_at": issued + self.lock_ttl_seconds},
                    ConditionExpression=Attr("pk").not_exists() | Attr("expires_at").lt(issued),
                )
                break
            except ClientError as exc:
                if not _conditional_failed(exc):
                    raise
            if time.monotonic() >= deadline:
                raise EventBusyError(event_id)
            time.sleep(self.lock_poll_seconds)

        try:
            yield
        finally:
            try:
                self._table.delete_item(Key=key, ConditionExpression=Attr("owner").eq(owner))
            except ClientError as exc:
                if not _conditional_failed(exc):
                    raise
                logger.warning("lock lease on event %s expired before release", event_id)

    def _query_prefix(self, event_id: str, prefix: str) -> list[dict]:
        kwargs = {
            "KeyConditionExpression": Key("pk").eq(f"EVENT#{event_id}")
            & Key("sk").begins_with(prefix)
        }
        items: list[dict] = []
        while True:
            resp = self._table.query(**kwargs)
            items.extend(resp.get("Items", []))
            last = resp.get("LastEvaluatedKey")
            if not last:
                return items
            kwargs["ExclusiveStartKey"] = last

    def _get_doc(self, event_id: str, sk: str) -> str | None:
        resp = self._table.get_item(Key={"pk": f"EVENT#{event_id}", "sk": sk})
        item = resp.get("Item")
        if not item:
            return None
        return item["doc"]

    def _put_doc(self, event_id: str, sk: str, doc: str, **extra) -> None:
        self._table.put_item(Item={"pk": f"EVENT#{event_id}", "sk": sk, "doc": doc, **extra})

    def create_event(self, req: CreateEventRequest) -> Event:
        event = build_event(req)
        self._put_doc(event.id, "META", event.model_dump_json(), name=event.name)
        return event

    def get_event(self, event_id: str) -> Event | None:
        doc = self._get_doc(event_id, "META")
        return Event.model_validate_json(doc) if doc else None

    def set_active_contestants(self, event_id: str, contestant_ids: set[str]) -> Event:
        event = self.get_event(event_id)
        if event is None:
            raise NotFoundError("event", event_id)
        event = event.with_active(contestant_ids)
        self._put_doc(event_id, "META", event.model_dump_json(), name=event.name)
        return event

    def add_judge(self, event_id: str, name: str) -> Judge:
        name = name.strip()
        if any(j.name == name for j in self.list_judges(event_id)):
            raise ValueError(f"judge {name!r} already exists in event")
        judge = Judge(id=new_id("jdg"), event_id=event_id, name=name)
        self._put_doc(event_id, f"JUDGE#{judge.id}", judge.model_dump_json())
        return judge

    def get_judge(self, event_id: str, judge_id: str) -> Judge | None:
        doc = self._get_doc(event_id, f"JUDGE#{judge_id}")
        return Judge.model_validate_json(doc) if doc else None

    def list_judges(self, event_id: str) -> list[Judge]:
        return [Judge.model_validate_json(it["doc"]) for it in self._query_prefix(event_id, "JUDGE#")]

    def add_scorer(self, event_id: str, name: str) -> Scorer:
        name = name.strip()
        if any(s.name == name for s in self.list_scorers(event_id)):
            raise ValueError(f"scorer {name!r} already exists in event")
        scorer = Scorer(id=new_id("scr"), event_id=event_id, name=name)
        self._put_doc(event_id, f"SCORER#{scorer.id}", scorer.model_dump_json())
        return scorer

    def get_scorer(self, event_id: str, scorer_id: str) -> Scorer | None:
        doc = self._get_doc(event_id, f"SCORER#{scorer_id}")
        return Scorer.model_validate_json(doc) if doc else None

    def list_scorers(self, event_id: str) -> list[Scorer]:
        return [
            Scorer.model_validate_json(it["doc"]) for it in self._query_prefix(event_id, "SCORER#")
        ]

    def replace_raw_scores(
        self,
        event_id: str,
        round_id: str,
        grader: str,
        scores_by_contestant: dict[str, list[RawScore]],
    ) -> None:
        if len(scores_by_contestant) > MAX_BULK_SUBMISSIONS:
            raise SubmissionTooLargeError(len(scores_by_contestant), MAX_BULK_SUBMISSIONS)
        # キー単位（出場者×審査員×ラウンド）の置き換えを1トランザクションにまとめる
        actions: list[dict] = []
        for contestant_id, rows in scores_by_contestant.items():
            key = {
                "pk": f"EVENT#{event_id}",
                "sk": f"RAW#{round_id}#{contestant_id}#{grader}",
            }
            if rows:
                item = {**key, "doc": _RAW_ROWS.dump_json(rows).decode()}
                actions.append({"Put": {"TableName": self.table_name, "Item": _attrs(item)}})
            else:
                actions.append({"Delete": {"TableName": self.table_name, "Key": _attrs(key)}})
        if actions:
            self._client.transact_write_items(TransactItems=actions)

    def list_raw_scores(self, event_id: str, round_id: str | None = None) -> list[RawScore]:
        prefix = f"RAW#{round_id}#" if round_id else "RAW#"
        rows: list[RawScore] = []
        for it in self._query_prefix(event_id, prefix):
            rows.extend(_RAW_ROWS.validate_json(it["doc"]))
        return rows

    def replace_round_snapshot(
        self, event_id: str, round_id: str, rows: list[ComputedRoundScore]
    ) -> None:
        doc = _ROUND_ROWS.dump_json(rows).decode()
        size = len(doc.encode())
        if size > _MAX_DOC_BYTES:
            raise SnapshotTooLargeError(round_id, size, _MAX_DOC_BYTES)
        self._put_doc(event_id, f"SNAP#{round_id}", doc)

    def list_round_scores(
        self, event_id: str, round_id: str | None = None
    ) -> list[ComputedRoundScore]:
        prefix = f"SNAP#{round_id}" if round_id else "SNAP#"
        rows: list[ComputedRoundScore] = []
        for it in self._query_prefix(event_id, prefix):
            rows.extend(_ROUND_ROWS.validate_json(it["doc"]))
        return rows

    def replace_overall_scores(self, event_id: str, rows: list[OverallScore]) -> None:
        self._put_doc(event_id, "OVERALL", _OVERALL_ROWS.dump_json(rows).decode())

    def list_overall_scores(self, event_id: str) -> list[OverallScore]:
        doc = self._get_doc(event_id, "OVERALL")
        return list(_OVERALL_ROWS.validate_json(doc)) if doc else []


def build_store() -> Store:
    kind = os.environ.get("STORE_BACKEND", "inmemory").strip().lower()
    if kind == "dynamodb":
        return DynamoDBStore.from_env()
    return InMemoryStore.create()
