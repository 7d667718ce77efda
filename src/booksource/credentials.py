"""Per-source cookie and token storage backed by a JSON file."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import urlsplit

from .errors import PersistenceError

AUTH_FILE_ENV = "BOOKSOURCE_AUTH_FILE"
DEFAULT_AUTH_FILENAME = "book_source_auth.json"


@dataclass(slots=True)
class CredentialRecord:
    """Cookies (keyed by origin, host:port or hostname) and tokens of a source."""

    source_id: str
    cookies: dict[str, str] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "cookies": dict(self.cookies),
            "tokens": dict(self.tokens),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialRecord:
        source_id = data.get("sourceId", data.get("source_id"))
        if not isinstance(source_id, str) or not source_id:
            raise PersistenceError(f"credential record without sourceId: {data!r}")
        return cls(
            source_id=source_id,
            cookies=_string_map(data.get("cookies")),
            tokens=_string_map(data.get("tokens")),
        )


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): str(item) for key, item in value.items() if item is not None}


def default_auth_path() -> Path:
    """Location of the credential file, honouring ``$BOOKSOURCE_AUTH_FILE``."""

    configured = os.environ.get(AUTH_FILE_ENV)
    if configured:
        return Path(configured).expanduser()
    return Path.cwd() / DEFAULT_AUTH_FILENAME


def cookie_keys(target_url: str) -> list[str]:
    """Lookup keys for ``target_url`` in precedence order.

    Origin (``scheme://host[:port]``), then ``host:port``, then the bare
    hostname. Raises ``ValueError`` for URLs without a host.
    """

    parts = urlsplit(target_url)
    hostname = parts.hostname
    if not parts.scheme or not hostname:
        raise ValueError(f"not an absolute URL: {target_url!r}")

    port = parts.port
    scheme = parts.scheme.lower()
    host = f"[{hostname}]" if ":" in hostname else hostname
    default_port = {"http": 80, "https": 443}.get(scheme)
    host_port = host if port is None or port == default_port else f"{host}:{port}"
    return [f"{scheme}://{host_port}", host_port, hostname]


class CredentialStore:
    """Whole-record upserts over a flat JSON list, one record per source id."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else default_auth_path()
        self._lock = threading.Lock()

    def load_all(self) -> list[CredentialRecord]:
        """Read every record; a missing file is created empty."""

        with self._lock:
            return self._read()

    def save_all(self, records: Iterable[CredentialRecord]) -> None:
        """Replace the persisted list with ``records``."""

        with self._lock:
            self._write(list(records))

    def get(self, source_id: str) -> CredentialRecord | None:
        for record in self.load_all():
            if record.source_id == source_id:
                return record
        return None

    def upsert(self, record: CredentialRecord) -> None:
        """Replace the record for ``record.source_id`` or append it."""

        with self._lock:
            records = self._read()
            for index, existing in enumerate(records):
                if existing.source_id == record.source_id:
                    records[index] = record
                    break
            else:
                records.append(record)
            self._write(records)

    def cookie_for(self, source_id: str, target_url: str) -> str:
        """Best matching cookie string for ``target_url``; empty when none.

        An unparsable URL yields an empty string; a broken store raises
        ``PersistenceError``.
        """

        try:
            keys = cookie_keys(target_url)
        except ValueError:
            return ""

        record = self.get(source_id)
        if record is None:
            return ""

        for key in keys:
            value = record.cookies.get(key)
            if value:
                return value
        return ""

    def _read(self) -> list[CredentialRecord]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._write([])
            return []
        except OSError as exc:
            raise PersistenceError(f"cannot read {self.path}: {exc}") from exc

        try:
            loaded = json.loads(text) if text.strip() else []
        except ValueError as exc:
            raise PersistenceError(f"{self.path} is not valid JSON: {exc}") from exc
        if not isinstance(loaded, list):
            raise PersistenceError(f"{self.path} must hold a JSON list")

        return [CredentialRecord.from_dict(item) for item in loaded if isinstance(item, dict)]

    def _write(self, records: list[CredentialRecord]) -> None:
        payload = json.dumps(
            [record.to_dict() for record in records], indent=2, ensure_ascii=False
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"cannot write {self.path}: {exc}") from exc
