from __future__ import annotations

import csv
import io
import json
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Accepted CSV header spellings -> canonical record keys.
HEADER_ALIASES: Dict[str, str] = {
    "id": "id",
    "userid": "id",
    "user_id": "id",
    "username": "username",
    "user_name": "username",
    "email": "email",
    "emailaddress": "email",
    "firstname": "givenName",
    "first_name": "givenName",
    "givenname": "givenName",
    "given_name": "givenName",
    "lastname": "familyName",
    "last_name": "familyName",
    "familyname": "familyName",
    "family_name": "familyName",
    "middlename": "middleName",
    "middle_name": "middleName",
    "populationid": "populationId",
    "population_id": "populationId",
    "enabled": "enabled",
    "externalid": "externalId",
    "external_id": "externalId",
    "title": "title",
    "locale": "locale",
    "nickname": "nickname",
    "primaryphone": "primaryPhone",
    "primary_phone": "primaryPhone",
    "phone": "primaryPhone",
    "mobilephone": "mobilePhone",
    "mobile_phone": "mobilePhone",
    "mobile": "mobilePhone",
}
KNOWN_KEYS = set(HEADER_ALIASES.values())
IDENTITY_KEYS = ("id", "username", "email")

BASIC_FIELDS = ["id", "username", "email", "givenName", "familyName", "populationId", "enabled"]
ALL_FIELDS = BASIC_FIELDS + [
    "middleName",
    "externalId",
    "title",
    "nickname",
    "locale",
    "primaryPhone",
    "mobilePhone",
    "createdAt",
    "updatedAt",
]

_FALSE_STRINGS = {"false", "0", "no", "n", "off", "disabled"}


def canonical_key(header: str) -> str:
    return HEADER_ALIASES.get(header.strip().lower(), header.strip())


def parse_csv(text: str, delimiter: str = ",") -> Tuple[List[str], List[Dict[str, str]]]:
    """Parse CSV text into (headers, rows); blank lines are skipped and cells trimmed."""
    if not text:
        return [], []
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    headers: List[str] = []
    rows: List[Dict[str, str]] = []
    for raw in reader:
        cells = [c.strip() for c in raw]
        if not any(cells):
            continue
        if not headers:
            headers = cells
            continue
        rows.append({h: (cells[i] if i < len(cells) else "") for i, h in enumerate(headers)})
    return headers, rows


def parse_json_records(text: str) -> List[Dict[str, Any]]:
    data = json.loads(text)
    if isinstance(data, dict):
        if isinstance(data.get("users"), list):
            data = data["users"]
        elif isinstance((data.get("_embedded") or {}).get("users"), list):
            data = data["_embedded"]["users"]
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise ValueError("JSON records must be a list of objects (or an object with a 'users' list)")
    return data


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Rename aliased headers to canonical keys; first non-empty value wins."""
    out: Dict[str, Any] = {}
    for key, value in row.items():
        if key is None:
            continue
        canon = canonical_key(str(key))
        if isinstance(value, str):
            value = value.strip()
        if canon in out and out[canon] not in (None, ""):
            continue
        out[canon] = value
    return out


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def generate_csv(rows: Sequence[Dict[str, Any]], headers: Optional[Sequence[str]] = None, delimiter: str = ",") -> str:
    if not rows:
        return ""
    columns = list(headers) if headers else list(rows[0].keys())
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=delimiter, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_format_cell(row.get(col)) for col in columns])
    return buf.getvalue()


def validate_user_rows(rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Check rows before they are sent upstream.

    Errors make a row unusable (no username/email, malformed email); warnings
    flag duplicates and columns that will be ignored.
    """
    errors: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    seen_usernames: Dict[str, int] = {}
    seen_emails: Dict[str, int] = {}
    unknown: set = set()
    count = 0

    for index, raw in enumerate(rows):
        count += 1
        row = normalize_row(raw)
        unknown.update(k for k in row if k not in KNOWN_KEYS)
        username = str(row.get("username") or "").strip()
        email = str(row.get("email") or "").strip()

        if not username and not email:
            errors.append({"row": index, "message": "Row needs a username or an email"})
            continue
        if email and not EMAIL_RE.match(email):
            errors.append({"row": index, "message": f"Invalid email address: {email}"})
            continue
        if username:
            key = username.lower()
            if key in seen_usernames:
                warnings.append({"row": index, "message": f"Duplicate username '{username}' (first seen in row {seen_usernames[key]})"})
            else:
                seen_usernames[key] = index
        if email:
            key = email.lower()
            if key in seen_emails:
                warnings.append({"row": index, "message": f"Duplicate email '{email}' (first seen in row {seen_emails[key]})"})
            else:
                seen_emails[key] = index

    if unknown:
        warnings.append({"row": None, "message": f"Unknown columns ignored: {', '.join(sorted(unknown))}"})
    invalid_rows = {e["row"] for e in errors}
    return {
        "valid": not errors,
        "total": count,
        "invalid_rows": sorted(invalid_rows),
        "errors": errors,
        "warnings": warnings,
    }


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in _FALSE_STRINGS


def _drop_empty(data: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in data.items():
        if isinstance(value, dict):
            value = _drop_empty(value)
            if not value:
                continue
        elif value in (None, ""):
            continue
        out[key] = value
    return out


def row_to_user_payload(row: Dict[str, Any], default_population_id: Optional[str] = None) -> Dict[str, Any]:
    """Build a PingOne user body from a (possibly aliased) flat row."""
    r = normalize_row(row)
    payload: Dict[str, Any] = {
        "username": r.get("username") or r.get("email"),
        "email": r.get("email"),
        "name": {
            "given": r.get("givenName"),
            "family": r.get("familyName"),
            "middle": r.get("middleName"),
        },
        "population": {"id": r.get("populationId") or default_population_id},
        "externalId": r.get("externalId"),
        "title": r.get("title"),
        "locale": r.get("locale"),
        "nickname": r.get("nickname"),
        "primaryPhone": r.get("primaryPhone"),
        "mobilePhone": r.get("mobilePhone"),
    }
    if r.get("enabled") not in (None, ""):
        payload["enabled"] = _as_bool(r["enabled"])
    return _drop_empty(payload)


def row_to_patch(row: Dict[str, Any]) -> Dict[str, Any]:
    """Like row_to_user_payload but only the attributes present in the row.

    Identity keys (id, username, email) locate the user and are never patched.
    """
    payload = row_to_user_payload(row)
    for key in IDENTITY_KEYS:
        payload.pop(key, None)
    if not normalize_row(row).get("populationId"):
        payload.pop("population", None)
    return payload


def user_to_row(user: Dict[str, Any], fields: Union[str, Sequence[str]] = "basic") -> Dict[str, Any]:
    name = user.get("name") or {}
    flat = {
        "id": user.get("id"),
        "username": user.get("username"),
        "email": user.get("email"),
        "givenName": name.get("given"),
        "familyName": name.get("family"),
        "middleName": name.get("middle"),
        "populationId": (user.get("population") or {}).get("id"),
        "enabled": user.get("enabled"),
        "externalId": user.get("externalId"),
        "title": user.get("title"),
        "nickname": user.get("nickname"),
        "locale": user.get("locale"),
        "primaryPhone": user.get("primaryPhone"),
        "mobilePhone": user.get("mobilePhone"),
        "createdAt": user.get("createdAt"),
        "updatedAt": user.get("updatedAt"),
    }
    return {key: flat.get(key, user.get(key)) for key in resolve_fields(fields)}


def resolve_fields(fields: Union[str, Sequence[str], None]) -> List[str]:
    if fields is None or fields == "basic":
        return list(BASIC_FIELDS)
    if fields == "all":
        return list(ALL_FIELDS)
    if isinstance(fields, str):
        raise ValueError(f"Unknown field set: {fields!r} (expected 'basic', 'all' or a list)")
    return [canonical_key(f) for f in fields]


def optimal_chunk_size(total: int) -> int:
    if not total or total <= 0:
        return 1000
    if total < 1000:
        return 100
    if total < 10000:
        return 500
    if total < 50000:
        return 1000
    if total < 100000:
        return 2000
    if total < 500000:
        return 5000
    return 10000
