from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

EventType = Literal["criteria", "orw"]
UnknownCriterionPolicy = Literal["reject", "skip"]

DERIVED_MARKER = "DERIVED FROM"
DERIVED_MIN_POINTS = Decimal(-1)
# 1回の一括送信で扱える出場者数（DynamoDB の1トランザクション上限）
MAX_BULK_SUBMISSIONS = 100
TIE_NOTE = (
    "Note: A tie has occurred. Please consult the Head Judge "
    "if a single winner is required to break the tie."
)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def now() -> datetime:
    return datetime.now(timezone.utc)


def _strip_required(v: object, field: str) -> str:
    if not isinstance(v, str):
        raise TypeError(f"{field} must be a string")
    s = v.strip()
    if not s:
        raise ValueError(f"{field} must not be blank")
    return s


class Criterion(BaseModel):
    id: str
    name: str
    weight_percent: Decimal = Field(ge=0, le=100)
    display_order: int = 0
    is_derived: bool = False
    derived_from_round_id: str | None = None
    min_points: Decimal = Decimal(0)
    max_points: Decimal = Decimal(100)

    @property
    def derived_by_convention(self) -> bool:
        """明示フラグまたは MinPoints == -1 の旧来ルールで派生扱いか。"""

        return self.is_derived or self.min_points == DERIVED_MIN_POINTS

    @property
    def derived(self) -> bool:
        return self.derived_by_convention or DERIVED_MARKER in self.name.upper()

    @property
    def weight(self) -> Decimal:
        return self.weight_percent / Decimal(100)


class Round(BaseModel):
    id: str
    name: str
    order: int
    criteria: list[Criterion] = Field(default_factory=list)

    def ordered_criteria(self) -> list[Criterion]:
        return sorted(self.criteria, key=lambda c: c.display_order)

    def criterion_by_name(self, name: str) -> Criterion | None:
        for criterion in self.criteria:
            if criterion.name == name:
                return criterion
        return None


class Contestant(BaseModel):
    id: str
    code: str
    name: str
    organization: str = ""
    is_active: bool = True


class Event(BaseModel):
    id: str
    name: str
    event_type: EventType = "criteria"
    rounds: list[Round] = Field(default_factory=list)
    contestants: list[Contestant] = Field(default_factory=list)
    created_at: datetime

    def ordered_rounds(self) -> list[Round]:
        return sorted(self.rounds, key=lambda r: r.order)

    def get_round(self, round_id: str) -> Round | None:
        return next((r for r in self.rounds if r.id == round_id), None)

    def contestant_by_code(self, code: str) -> Contestant | None:
        return next((c for c in self.contestants if c.code == code), None)

    def with_active(self, contestant_ids: set[str]) -> "Event":
        contestants = [
            c.model_copy(update={"is_active": c.id in contestant_ids}) for c in self.contestants
        ]
        return self.model_copy(update={"contestants": contestants})


class Judge(BaseModel):
    id: str
    event_id: str
    name: str


class Scorer(BaseModel):
    id: str
    event_id: str
    name: str


class RawScore(BaseModel):
    event_id: str
    round_id: str
    contestant_id: str
    criterion_id: str
    judge_id: str | None = None
    scorer_id: str | None = None
    value: Decimal
    created_at: datetime

    @model_validator(mode="after")
    def _exactly_one_grader(self) -> "RawScore":
        if (self.judge_id is None) == (self.scorer_id is None):
            raise ValueError("exactly one of judge_id / scorer_id must be set")
        return self

    @property
    def grader_key(self) -> str:
        return grader_key(judge_id=self.judge_id, scorer_id=self.scorer_id)


def grader_key(*, judge_id: str | None = None, scorer_id: str | None = None) -> str:
    # 審査員と採点者のIDは同じ名前空間に混ざらないよう接頭辞で区別する
    if judge_id is not None:
        return f"J#{judge_id}"
    if scorer_id is not None:
        return f"S#{scorer_id}"
    raise ValueError("judge_id or scorer_id is required")


class ComputedRoundScore(BaseModel):
    event_id: str
    round_id: str
    contestant_id: str
    criterion_id: str | None = None
    score: Decimal
    rank: Decimal = Decimal(0)
    computed_at: datetime

    @property
    def is_total(self) -> bool:
        return self.criterion_id is None


class OverallScore(BaseModel):
    event_id: str
    contestant_id: str
    score: Decimal
    rank: Decimal
    computed_at: datetime


# --- submission contract ---


class ScoreItem(BaseModel):
    criteria_name: str
    score: Decimal


class ContestantScoreSubmission(BaseModel):
    contestant_code: str = Field(min_length=1)
    scores: list[ScoreItem]


class SubmitScoresRequest(BaseModel):
    contestant_code: str = Field(min_length=1)
    scores: list[ScoreItem]


class SubmitRoundRequest(BaseModel):
    submissions: list[ContestantScoreSubmission] = Field(min_length=1, max_length=MAX_BULK_SUBMISSIONS)


class StartRoundRequest(BaseModel):
    """ラウンド開始時に出場させる出場者コード。含まれない出場者は非アクティブになる。"""

    contestant_codes: list[str] = Field(default_factory=list)

    @field_validator("contestant_codes", mode="before")
    @classmethod
    def _strip_codes(cls, v: object) -> list[str]:
        if not isinstance(v, list):
            raise TypeError("contestant_codes must be a list")
        return [_strip_required(code, "contestant code") for code in v]


# --- event setup ---


class CriterionSpec(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    weight_percent: Decimal = Field(ge=0, le=100)
    display_order: int | None = None
    is_derived: bool = False
    derived_from_round: str | None = None
    min_points: Decimal = Decimal(0)
    max_points: Decimal = Decimal(100)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: object) -> str:
        return _strip_required(v, "criterion name")


class RoundSpec(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    order: int | None = None
    criteria: list[CriterionSpec] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: object) -> str:
        return _strip_required(v, "round name")


class ContestantSpec(BaseModel):
    code: str = Field(min_length=1, max_length=30)
    name: str = Field(min_length=1, max_length=100)
    organization: str = ""
    is_active: bool = True

    @field_validator("code", "name", mode="before")
    @classmethod
    def _strip(cls, v: object) -> str:
        return _strip_required(v, "contestant code/name")


class CreateEventRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    event_type: EventType = "criteria"
    rounds: list[RoundSpec] = Field(min_length=1)
    contestants: list[ContestantSpec] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: object) -> str:
        return _strip_required(v, "event name")

    @model_validator(mode="after")
    def _unique_names(self) -> "CreateEventRequest":
        codes = [c.code for c in self.contestants]
        if len(set(codes)) != len(codes):
            raise ValueError("contestant codes must be unique within an event")
        round_names = [r.name for r in self.rounds]
        if len(set(round_names)) != len(round_names):
            raise ValueError("round names must be unique within an event")
        for r in self.rounds:
            names = [c.name for c in r.criteria]
            if len(set(names)) != len(names):
                raise ValueError(f"criterion names must be unique within round {r.name!r}")
            for c in r.criteria:
                if c.derived_from_round is not None and c.derived_from_round not in round_names:
                    raise ValueError(f"unknown source round {c.derived_from_round!r}")
        return self


class CreateEventResponse(BaseModel):
    event_id: str


class AddGraderRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: object) -> str:
        return _strip_required(v, "name")


# --- reports ---


class TallyRow(BaseModel):
    contestant_name: str
    contestant_code: str
    total_score: Decimal
    rank: Decimal


class RoundTallyReport(BaseModel):
    round_name: str
    scores: list[TallyRow] = Field(default_factory=list)


class OverallTallyReport(BaseModel):
    scores: list[TallyRow] = Field(default_factory=list)


class ContestantSummary(BaseModel):
    contestant_id: str
    code: str
    name: str
    organization: str = ""
    score: Decimal
    rank: Decimal = Decimal(0)
    criteria_breakdown: dict[str, Decimal] = Field(default_factory=dict)


class RankSumRow(BaseModel):
    contestant_id: str
    code: str
    name: str
    organization: str = ""
    rank_sum: Decimal
    criterion_ranks: dict[str, Decimal] = Field(default_factory=dict)
    rank: Decimal = Decimal(0)


class CriterionDetailRow(BaseModel):
    contestant_id: str
    code: str
    name: str
    organization: str = ""
    judge_raw_scores: dict[str, Decimal] = Field(default_factory=dict)
    average_score: Decimal
    weighted_score: Decimal
    rank: Decimal = Decimal(0)


class WinnerGroup(BaseModel):
    award: str
    winners: list[ContestantSummary]

    @computed_field
    @property
    def tie(self) -> bool:
        return len(self.winners) > 1

    @computed_field
    @property
    def note(self) -> str | None:
        return TIE_NOTE if self.tie else None


class CriterionReport(BaseModel):
    criterion_id: str
    criterion_name: str
    derived: bool
    rows: list[CriterionDetailRow]


class RoundReport(BaseModel):
    round_id: str
    round_name: str
    order: int
    # judge_id -> contestant_id -> criterion_id -> value
    raw_scores: dict[str, dict[str, dict[str, Decimal]]] = Field(default_factory=dict)
    overall: list[ContestantSummary] = Field(default_factory=list)
    rank_sum: list[RankSumRow] = Field(default_factory=list)
    criteria: list[CriterionReport] = Field(default_factory=list)
    winners: list[WinnerGroup] = Field(default_factory=list)


class EventReport(BaseModel):
    event_id: str
    event_name: str
    event_type: EventType
    rounds: list[RoundReport]
    overall: list[ContestantSummary]
    overall_winners: WinnerGroup | None = None


class RoundProgress(BaseModel):
    round_id: str
    submitted: int
    registered: int

    @computed_field
    @property
    def complete(self) -> bool:
        return self.registered > 0 and self.submitted >= self.registered
