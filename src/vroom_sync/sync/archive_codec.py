"""Archive codec: datasets to zip archives of CSV tables and back.

An archive holds ``metadata.json`` plus one CSV file per entity type. The
same row encoding is used for mirror tables, so both channels share the
coercion rules declared in ``FIELD_COERCIONS``.
"""

import csv
import io
import json
import logging
import zipfile
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..models import ENTITY_TABLES, Dataset, SyncModel, TableSpec, utc_now
from .exceptions import InvalidFileFormatError, SyncValidationError, VersionMismatchError
from .models import ArchiveMetadata, ParsedArchive


logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0.0"
METADATA_FILE = "metadata.json"
ARCHIVE_MIME_TYPE = "application/zip"

NULL_SENTINELS = frozenset({"", "null", "undefined", "NULL"})


class Coercion(Enum):
    """How a cell is turned back into a typed value."""
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"


S, I, F, B, T = (Coercion.STRING, Coercion.INTEGER, Coercion.FLOAT,
                 Coercion.BOOLEAN, Coercion.TIMESTAMP)

# Keyed by column name; a name means the same thing in every table
FIELD_COERCIONS: Dict[str, Coercion] = {
    # shared
    "id": S, "createdAt": T, "updatedAt": T,
    "vehicleId": S, "startDate": T, "endDate": T, "isActive": B,
    "paymentAmount": F,
    # vehicles
    "userId": S, "make": S, "model": S, "year": I, "vehicleType": S,
    "licensePlate": S, "nickname": S, "initialMileage": I,
    "purchasePrice": F, "purchaseDate": T,
    # expenses
    "tags": S, "category": S, "amount": F, "currency": S, "date": T,
    "mileage": I, "volume": F, "gallons": F, "charge": F,
    "description": S, "receiptUrl": S,
    # vehicle financing
    "financingType": S, "provider": S, "originalAmount": F,
    "currentBalance": F, "apr": F, "termMonths": I,
    "paymentFrequency": S, "paymentDayOfMonth": I, "paymentDayOfWeek": I,
    "residualValue": F, "mileageLimit": I, "excessMileageFee": F,
    # financing payments
    "financingId": S, "paymentDate": T, "principalAmount": F,
    "interestAmount": F, "remainingBalance": F, "paymentNumber": I,
    "paymentType": S, "isScheduled": B,
    # insurance policies
    "company": S, "policyNumber": S, "totalCost": F,
    "termLengthMonths": I, "monthlyCost": F,
}


def coercion_for(field_name: str) -> Coercion:
    """Return the declared coercion of a column, or guess it from its name.

    Undeclared columns follow the naming convention: ``...At``, ``...Date``
    and ``date`` are timestamps, ``is...`` are booleans, everything else is
    a string.
    """
    rule = FIELD_COERCIONS.get(field_name)
    if rule is not None:
        return rule

    if field_name.endswith("At") or field_name.endswith("Date") or field_name == "date":
        rule = Coercion.TIMESTAMP
    elif field_name.startswith("is") and field_name[2:3].isupper():
        rule = Coercion.BOOLEAN
    else:
        rule = Coercion.STRING
    logger.warning(f"No declared coercion for column {field_name!r}, using {rule.value}")
    return rule


def encode_value(value: Any) -> str:
    """Render a typed value as a cell."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _parse_timestamp(raw: str) -> datetime:
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def decode_value(field_name: str, raw: Optional[str]) -> Any:
    """Turn a cell back into a typed value using the column's coercion.

    Null sentinels become None. Cells that cannot be parsed as their
    declared type become None as well; required columns are then rejected
    by model validation.
    """
    if raw is None or raw in NULL_SENTINELS:
        return None

    rule = coercion_for(field_name)
    try:
        if rule is Coercion.TIMESTAMP:
            return _parse_timestamp(raw)
        if rule is Coercion.BOOLEAN:
            return raw.strip().lower() in ("true", "1")
        if rule is Coercion.FLOAT:
            return float(raw)
        if rule is Coercion.INTEGER:
            try:
                return int(raw)
            except ValueError:
                # spreadsheets hand whole numbers back as "12.0"
                number = float(raw)
                if not number.is_integer():
                    raise ValueError(f"{raw!r} is not a whole number")
                return int(number)
    except ValueError as e:
        logger.warning(f"Unparseable {rule.value} in column {field_name!r}: {e}")
        return None
    return raw


def encode_table(spec: TableSpec, records: Sequence[SyncModel]) -> List[List[str]]:
    """Encode records of one entity type as rows, headers first."""
    rows = [spec.headers]
    for record in records:
        rows.append([encode_value(getattr(record, column)) for column in spec.columns])
    return rows


def decode_table(spec: TableSpec, rows: Sequence[Sequence[str]]) -> List[SyncModel]:
    """Decode rows (headers first) into records of one entity type.

    Columns missing from the headers take the model default. Blank rows
    are skipped.

    Raises:
        SyncValidationError: If a row does not form a valid record
    """
    if not rows:
        return []

    headers = list(rows[0])
    records = []
    for index, row in enumerate(rows[1:], start=1):
        if not any(cell for cell in row):
            continue
        values = {}
        for position, header in enumerate(headers):
            cell = row[position] if position < len(row) else None
            value = decode_value(header, cell)
            if value is not None:
                values[header] = value
        try:
            records.append(spec.model.model_validate(values))
        except ValidationError as e:
            raise SyncValidationError(
                f"Invalid row {index} in {spec.table}",
                {
                    "table": spec.table,
                    "row": index,
                    "id": values.get("id"),
                    "errors": [
                        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                        for err in e.errors()
                    ],
                }
            ) from e
    return records


def _write_csv(rows: List[List[str]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def _read_csv(data: bytes) -> List[List[str]]:
    return list(csv.reader(io.StringIO(data.decode("utf-8-sig"), newline="")))


def serialize(dataset: Dataset, owner_id: str, timestamp: Optional[datetime] = None) -> bytes:
    """Serialize a dataset into archive bytes.

    Args:
        dataset: Records to archive
        owner_id: User the archive belongs to
        timestamp: Creation time to record (defaults to now)

    Returns:
        Zip archive content
    """
    metadata = {
        "version": FORMAT_VERSION,
        "timestamp": encode_value(timestamp or utc_now()),
        "userId": owner_id,
    }

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(METADATA_FILE, json.dumps(metadata, indent=2))
        for spec in ENTITY_TABLES:
            archive.writestr(spec.file_name, _write_csv(encode_table(spec, dataset.records(spec))))

    logger.debug(f"Serialized archive for user {owner_id}: {dataset.counts()}")
    return buffer.getvalue()


def parse(data: bytes) -> ParsedArchive:
    """Parse archive bytes.

    The format version is checked before any table is read.

    Raises:
        InvalidFileFormatError: If the bytes are not an archive or a member is missing
        VersionMismatchError: If the archive was written by another format version
        SyncValidationError: If a table row does not form a valid record
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as e:
        raise InvalidFileFormatError("not a zip archive", {"cause": str(e)}) from e

    with archive:
        names = set(archive.namelist())
        if METADATA_FILE not in names:
            raise InvalidFileFormatError(f"missing {METADATA_FILE}")

        try:
            raw_metadata = json.loads(archive.read(METADATA_FILE).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidFileFormatError(f"unreadable {METADATA_FILE}", {"cause": str(e)}) from e
        if not isinstance(raw_metadata, dict):
            raise InvalidFileFormatError(f"{METADATA_FILE} is not an object")

        version = raw_metadata.get("version")
        if version is None:
            raise InvalidFileFormatError(f"{METADATA_FILE} has no version")
        if version != FORMAT_VERSION:
            raise VersionMismatchError(FORMAT_VERSION, version)

        missing = [spec.file_name for spec in ENTITY_TABLES if spec.file_name not in names]
        if missing:
            raise InvalidFileFormatError("missing tables", {"missing_files": missing})

        tables = {}
        for spec in ENTITY_TABLES:
            try:
                rows = _read_csv(archive.read(spec.file_name))
            except (UnicodeDecodeError, csv.Error) as e:
                raise InvalidFileFormatError(f"unreadable {spec.file_name}",
                                             {"cause": str(e)}) from e
            tables[spec.key] = decode_table(spec, rows)

    try:
        created = _parse_timestamp(str(raw_metadata.get("timestamp")))
    except ValueError:
        created = None

    metadata = ArchiveMetadata(
        version=version,
        timestamp=created,
        user_id=str(raw_metadata.get("userId") or ""),
    )
    return ParsedArchive(metadata=metadata, dataset=Dataset(**tables))


MIRROR_METADATA_TABLE = "Metadata"


def encode_mirror_metadata(owner_id: str) -> List[List[str]]:
    """Rows of the mirror's metadata table.

    No timestamp is written so that pushing the same dataset twice leaves
    the mirror unchanged.
    """
    return [["formatVersion", "ownerId"], [FORMAT_VERSION, owner_id]]


def decode_mirror_metadata(rows: Sequence[Sequence[str]]) -> Dict[str, str]:
    """Read the mirror's metadata table; empty if the table is missing."""
    if len(rows) < 2:
        return {}
    return {header: value for header, value in zip(rows[0], rows[1])}
