# Data models for the household ledger backend
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# A decoded spreadsheet cell: trimmed text, or a number exactly as the
# spreadsheet stored it (never re-parsed through the string heuristics).
Cell = Union[float, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    EXPENSE = "expense"
    INCOME = "income"


class ImportStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class Person(BaseModel):
    id: str
    user_id: str
    name: str
    is_active: bool = True


class Category(BaseModel):
    id: str
    user_id: str
    name: str
    type: TransactionType
    is_active: bool = True


class Subcategory(BaseModel):
    id: str
    user_id: str
    category_id: str
    name: str
    is_active: bool = True


class Transaction(BaseModel):
    id: Optional[str] = None
    user_id: str
    type: TransactionType
    date: str
    amount: float = Field(gt=0)
    person_id: str
    category_id: str
    subcategory_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class ImportLog(BaseModel):
    id: Optional[str] = None
    user_id: str
    type: TransactionType
    file_name: str
    total_records: int
    imported_records: int
    status: ImportStatus
    error_details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class RowValidationError(BaseModel):
    row: int
    field: str
    message: str


class ImportResult(BaseModel):
    total: int
    imported: int
    status: ImportStatus
    message: Optional[str] = None


class ImportSession(BaseModel):
    id: str
    user_id: str
    file_name: str
    headers: List[str]
    rows: List[List[Cell]]
    type: Optional[TransactionType] = None
    mapping: List[str]
    errors: List[RowValidationError] = []
    result: Optional[ImportResult] = None
    created_at: datetime = Field(default_factory=utcnow)


class Profile(BaseModel):
    id: str
    email: str = ""
    display_name: Optional[str] = None
    phone: Optional[str] = None
    ai_enabled: bool = False
    last_activity: Optional[datetime] = None
    roles: List[str] = []
    # Deactivated users keep their data but can no longer sign in.
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class AIToken(BaseModel):
    id: Optional[str] = None
    user_id: str
    token_hash: str
    is_active: bool = True
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class WebhookConfig(BaseModel):
    id: str
    url: str
    is_active: bool = True


class WebhookLog(BaseModel):
    webhook_config_id: str
    status_code: int
    response_time_ms: int
    event_type: str
    user_id: Optional[str] = None


class SecurityEvent(BaseModel):
    event_type: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class GoalDataSource(str, Enum):
    ASSET = "asset"
    INCOME = "income"
    BALANCE = "balance"


class GoalProgressMode(str, Enum):
    EVOLUTION = "evolution"
    REMAINING = "remaining"


class GoalPeriodType(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class Goal(BaseModel):
    id: str
    user_id: str
    title: str
    target_value: Optional[float] = None
    current_value: Optional[float] = None
    data_source: Optional[GoalDataSource] = None
    baseline_value: Optional[float] = None
    progress_mode: Optional[GoalProgressMode] = None
    period_type: Optional[GoalPeriodType] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    person_ids: Optional[List[str]] = None


class GoalProgress(BaseModel):
    goal: Goal
    progress: float


class Asset(BaseModel):
    id: str
    user_id: str
    category: str
    date: str
    value: float
    created_at: Optional[datetime] = None


# Request bodies

class TypeRequest(BaseModel):
    type: TransactionType


class MappingRequest(BaseModel):
    column_index: int
    field: str
