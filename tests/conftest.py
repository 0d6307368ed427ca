"""
Pytest configuration and fixtures for the test suite.
"""
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from hypothesis import settings

from vroom_sync.database import VehicleDatabase
from vroom_sync.models import (
    Dataset, Expense, FinancingPayment, FinancingRecord, InsurancePolicy,
    UserAccount, Vehicle,
)
from vroom_sync.sync.engine import SyncEngine
from vroom_sync.sync.interfaces import ArchiveAdapter, MirrorAdapter, RemoteAdapterFactory
from vroom_sync.sync.models import RemoteFile

# Configure Hypothesis settings for all tests
# Disable deadline to avoid flaky failures during parallel execution
settings.register_profile("default", deadline=None)
settings.load_profile("default")


USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class FakeMirror(MirrorAdapter):
    """In-memory mirror; operations named in failures raise the given error."""

    def __init__(self):
        self.mirrors: Dict[str, Dict[str, List[List[str]]]] = {}
        self.titles: Dict[str, str] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failures:
            raise self.failures[operation]

    async def push_table(self, mirror_id, table_name, rows):
        self._call("push_table")
        self.mirrors.setdefault(mirror_id, {})[table_name] = [list(row) for row in rows]

    async def read_table(self, mirror_id, table_name):
        self._call("read_table")
        return [list(row) for row in self.mirrors.get(mirror_id, {}).get(table_name, [])]

    async def create_mirror(self, title):
        self._call("create_mirror")
        mirror_id = f"mirror-{len(self.titles) + 1}"
        self.titles[mirror_id] = title
        self.mirrors[mirror_id] = {}
        return mirror_id

    async def find_mirror_by_name(self, folder_id, name):
        self._call("find_mirror_by_name")
        for mirror_id, title in self.titles.items():
            if title == name:
                return mirror_id
        return None

    async def link_for(self, mirror_id):
        return f"https://mirror.example/{mirror_id}"


class FakeArchive(ArchiveAdapter):
    """In-memory file storage with a monotonically advancing clock."""

    def __init__(self):
        self.folders: Dict[str, tuple] = {}
        self.files: Dict[str, RemoteFile] = {}
        self.contents: Dict[str, bytes] = {}
        self.parents: Dict[str, str] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self._counter = 0
        self._clock = datetime(2024, 1, 1, 12, 0, 0)

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failures:
            raise self.failures[operation]

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def add_file(self, folder_id: str, name: str, data: bytes) -> RemoteFile:
        """Store a file directly, bypassing call recording."""
        self._clock += timedelta(minutes=1)
        file_id = self._next_id("file")
        remote_file = RemoteFile(id=file_id, name=name, created_time=self._clock,
                                 modified_time=self._clock, size=len(data),
                                 link=f"https://files.example/{file_id}")
        self.files[file_id] = remote_file
        self.contents[file_id] = data
        self.parents[file_id] = folder_id
        return remote_file

    async def upload(self, name, data, mime_type, folder_id):
        self._call("upload")
        return self.add_file(folder_id, name, data)

    async def list_folder(self, folder_id):
        self._call("list_folder")
        return [f for file_id, f in self.files.items() if self.parents[file_id] == folder_id]

    async def download(self, file_id):
        self._call("download")
        return self.contents[file_id]

    async def delete(self, file_id):
        self._call("delete")
        del self.files[file_id]
        del self.contents[file_id]
        del self.parents[file_id]

    async def create_folder(self, name, parent_id=None):
        self._call("create_folder")
        folder_id = self._next_id("folder")
        self.folders[folder_id] = (name, parent_id)
        return folder_id

    async def find_folder_by_name(self, name, parent_id=None):
        self._call("find_folder_by_name")
        for folder_id, (folder_name, folder_parent) in self.folders.items():
            if folder_name == name and folder_parent == parent_id:
                return folder_id
        return None

    def mutating_calls(self) -> List[str]:
        return [call for call in self.calls if call in ("upload", "delete", "create_folder")]


class FakeAdapterFactory(RemoteAdapterFactory):
    def __init__(self, mirror: FakeMirror, archive: FakeArchive):
        self.mirror = mirror
        self.archive = archive

    def mirror_for(self, user):
        return self.mirror

    def archive_for(self, user):
        return self.archive


def make_dataset(user_id: str = USER_ID, vehicles: int = 3, expenses: int = 10,
                 prefix: str = "") -> Dataset:
    """Build a consistent dataset with one financing record, two payments and one policy."""
    base = datetime(2024, 1, 15, 9, 30, 0)
    vehicle_list = [
        Vehicle(id=f"{prefix}veh-{i}", user_id=user_id, make="Toyota", model=f"Model {i}",
                year=2015 + i, license_plate=f"ABC-{i}", initial_mileage=1000 * i,
                purchase_price=15000.5 + i, purchase_date=base - timedelta(days=365 * i),
                created_at=base, updated_at=base)
        for i in range(vehicles)
    ]
    expense_list = [
        Expense(id=f"{prefix}exp-{i}", vehicle_id=vehicle_list[i % vehicles].id,
                tags='["fuel"]', category="fuel", amount=40.25 + i,
                date=base + timedelta(days=i), mileage=10000 + i * 100, volume=10.5,
                description=f"Fill-up {i}, \"premium\"", created_at=base, updated_at=base)
        for i in range(expenses)
    ] if vehicles else []

    financing = []
    payments = []
    insurance = []
    if vehicles:
        financing = [FinancingRecord(
            id=f"{prefix}fin-1", vehicle_id=vehicle_list[0].id, provider="Bank",
            original_amount=20000.0, current_balance=15000.0, apr=4.5, term_months=60,
            start_date=base, payment_amount=372.86, payment_day_of_month=15,
            is_active=True, created_at=base, updated_at=base)]
        payments = [
            FinancingPayment(id=f"{prefix}pay-{i}", financing_id=financing[0].id,
                             payment_date=base + timedelta(days=30 * i), payment_amount=372.86,
                             principal_amount=300.0, interest_amount=72.86,
                             remaining_balance=15000.0 - 300 * i, payment_number=i,
                             is_scheduled=i == 2, created_at=base, updated_at=base)
            for i in (1, 2)
        ]
        insurance = [InsurancePolicy(
            id=f"{prefix}ins-1", vehicle_id=vehicle_list[0].id, company="Insurer",
            policy_number="P-1", total_cost=600.0, term_length_months=6, start_date=base,
            end_date=base + timedelta(days=182), monthly_cost=100.0, created_at=base,
            updated_at=base)]

    return Dataset(vehicles=vehicle_list, expenses=expense_list, financing=financing,
                   financing_payments=payments, insurance=insurance)


@pytest.fixture
def dataset_factory():
    """Factory building consistent datasets."""
    return make_dataset


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.duckdb"


@pytest.fixture
def db(db_path):
    """Open database with two connected users and no records."""
    with VehicleDatabase(db_path) as database:
        database.upsert_user(UserAccount(id=USER_ID, email="alex@example.com",
                                         display_name="Alex", remote_token="token-1"))
        database.upsert_user(UserAccount(id=OTHER_USER_ID, email="sam@example.com",
                                         display_name="Sam", remote_token="token-2"))
        yield database


@pytest.fixture
def fake_mirror():
    return FakeMirror()


@pytest.fixture
def fake_archive():
    return FakeArchive()


@pytest.fixture
def adapters(fake_mirror, fake_archive):
    return FakeAdapterFactory(fake_mirror, fake_archive)


@pytest.fixture
def engine(db, adapters):
    """Engine whose inactivity minutes last 0.2 seconds."""
    return SyncEngine(db, adapters, seconds_per_minute=0.2)
