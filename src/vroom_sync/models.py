"""
Pydantic models for the records the sync engine moves between stores.

Attributes are snake_case; every model serializes with camelCase aliases,
which are also the column names used in archives and mirrors.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Current time as a naive UTC timestamp."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncModel(BaseModel):
    """Base model with camelCase aliases and naive UTC timestamps."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="after")
    @classmethod
    def _naive_utc(cls, value):
        # DuckDB TIMESTAMP columns carry no zone, so store everything as UTC
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class Vehicle(SyncModel):
    """A vehicle owned by a user."""
    id: str
    user_id: str
    make: str
    model: str
    year: int
    vehicle_type: str = "gas"
    license_plate: Optional[str] = None
    nickname: Optional[str] = None
    initial_mileage: Optional[int] = None
    purchase_price: Optional[float] = None
    purchase_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Expense(SyncModel):
    """
    A single expense booked against a vehicle.

    Attributes:
        tags: JSON array of tags, stored as text
        volume: Fuel volume for fuel expenses
        charge: Energy in kWh for charging expenses
    """
    id: str
    vehicle_id: str
    tags: Optional[str] = None
    category: str
    amount: float
    currency: str = "USD"
    date: datetime
    mileage: Optional[int] = None
    volume: Optional[float] = None
    charge: Optional[float] = None
    description: Optional[str] = None
    receipt_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FinancingRecord(SyncModel):
    """A loan, lease or ownership record for a vehicle."""
    id: str
    vehicle_id: str
    financing_type: str = "loan"
    provider: str
    original_amount: float
    current_balance: float
    apr: Optional[float] = None
    term_months: int
    start_date: datetime
    payment_amount: float
    payment_frequency: str = "monthly"
    payment_day_of_month: Optional[int] = None
    payment_day_of_week: Optional[int] = None
    residual_value: Optional[float] = None
    mileage_limit: Optional[int] = None
    excess_mileage_fee: Optional[float] = None
    is_active: bool = True
    end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FinancingPayment(SyncModel):
    """A payment made against a financing record."""
    id: str
    financing_id: str
    payment_date: datetime
    payment_amount: float
    principal_amount: float
    interest_amount: float
    remaining_balance: float
    payment_number: int
    payment_type: str = "standard"
    is_scheduled: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InsurancePolicy(SyncModel):
    """An insurance policy covering a vehicle."""
    id: str
    vehicle_id: str
    company: str
    policy_number: Optional[str] = None
    total_cost: float
    term_length_months: int
    start_date: datetime
    end_date: datetime
    monthly_cost: float
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserAccount(SyncModel):
    """
    The parts of a user account the sync engine needs.

    Attributes:
        remote_token: Credential for the remote services (None if never connected)
    """
    id: str
    email: str
    display_name: str
    remote_token: Optional[str] = None


class SyncState(SyncModel):
    """Per-user sync settings and bookkeeping, one row per user."""
    user_id: str
    last_sync_date: Optional[datetime] = None
    last_backup_date: Optional[datetime] = None
    last_data_change_date: Optional[datetime] = None
    mirror_enabled: bool = False
    archive_enabled: bool = False
    sync_on_inactivity: bool = True
    inactivity_delay_minutes: int = 5
    archive_retention_count: int = 10
    mirror_id: Optional[str] = None
    archive_folder_id: Optional[str] = None
    last_sync_error: Optional[str] = None


@dataclass(frozen=True)
class TableSpec:
    """
    Where one entity type lives in each store.

    Attributes:
        key: Dataset attribute holding the records
        model: Pydantic model of a record
        table: Local table name, also used in conflict reports
        file_name: Member name inside an archive
        title: Table title inside a mirror
        parent_field: Field referencing the parent record (None for vehicles)
        parent_key: Dataset attribute holding the parent records
    """
    key: str
    model: Type[SyncModel]
    table: str
    file_name: str
    title: str
    parent_field: Optional[str] = None
    parent_key: Optional[str] = None

    @property
    def columns(self) -> List[str]:
        """Local column names in declaration order."""
        return list(self.model.model_fields)

    @property
    def headers(self) -> List[str]:
        """Archive and mirror column names in declaration order."""
        return [field.alias or name for name, field in self.model.model_fields.items()]


# Parents come before children; deletes walk this tuple backwards
ENTITY_TABLES: Tuple[TableSpec, ...] = (
    TableSpec("vehicles", Vehicle, "vehicles", "vehicles.csv", "Vehicles"),
    TableSpec("expenses", Expense, "expenses", "expenses.csv", "Expenses",
              parent_field="vehicle_id", parent_key="vehicles"),
    TableSpec("financing", FinancingRecord, "vehicle_financing", "financing.csv",
              "Vehicle Financing", parent_field="vehicle_id", parent_key="vehicles"),
    TableSpec("financing_payments", FinancingPayment, "vehicle_financing_payments",
              "financing_payments.csv", "Vehicle Financing Payments",
              parent_field="financing_id", parent_key="financing"),
    TableSpec("insurance", InsurancePolicy, "insurance_policies", "insurance.csv",
              "Insurance Policies", parent_field="vehicle_id", parent_key="vehicles"),
)


class Dataset(SyncModel):
    """Every record a user owns, grouped by entity type."""
    vehicles: List[Vehicle] = Field(default_factory=list)
    expenses: List[Expense] = Field(default_factory=list)
    financing: List[FinancingRecord] = Field(default_factory=list)
    financing_payments: List[FinancingPayment] = Field(default_factory=list)
    insurance: List[InsurancePolicy] = Field(default_factory=list)

    def records(self, spec: TableSpec) -> List[SyncModel]:
        """Records of the entity type described by spec."""
        return getattr(self, spec.key)

    def counts(self) -> Dict[str, int]:
        """Record count per entity type."""
        return {spec.key: len(self.records(spec)) for spec in ENTITY_TABLES}

    def is_empty(self) -> bool:
        return not any(self.counts().values())
