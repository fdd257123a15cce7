from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from taskgate.logging import get_logger
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.models import Account, RefreshTokenRecord


class MemoryStore:
    """In-process backing store for accounts and refresh token records.

    Every mutation of one account's state runs under that account's own
    ``RLock``; ``_index_lock`` only guards the dictionaries themselves and is
    never held while waiting on an account lock.  When ``fs_root`` is given the
    state is snapshotted to ``<fs_root>/state/auth_store.json`` after each
    write so a restarted process keeps its sessions.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._handles: Dict[str, str] = {}
        self._tokens_by_hash: Dict[str, str] = {}
        self._account_tokens: Dict[str, List[str]] = {}
        self._account_locks: Dict[str, threading.RLock] = {}
        self._index_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- locking -----------------------------------------------------------

    def _account_lock(self, account_id: str) -> threading.RLock:
        with self._index_lock:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._account_locks[account_id] = lock
            return lock

    # -- accounts ----------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        key = account.handle.lower()
        with self._index_lock:
            if key in self._handles:
                raise ConstraintViolation("handle already exists", {"field": "handle"})
            self._handles[key] = account.id
            self.accounts[account.id] = replace(account)
            self._account_tokens[account.id] = []
        self._persist_state()
        return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._index_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_handle(self, handle: str) -> Optional[Account]:
        with self._index_lock:
            account_id = self._handles.get(handle.lower())
            account = self.accounts.get(account_id) if account_id else None
            return replace(account) if account else None

    def update_account_atomic(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        """Apply ``mutate`` to the account inside its critical section."""
        with self._account_lock(account_id):
            with self._index_lock:
                current = self.accounts.get(account_id)
            if current is None:
                return None
            updated = replace(current)
            mutate(updated)
            with self._index_lock:
                if account_id not in self.accounts:
                    return None
                self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_account(self, account_id: str) -> bool:
        with self._account_lock(account_id):
            with self._index_lock:
                account = self.accounts.pop(account_id, None)
                if account is None:
                    return False
                self._handles.pop(account.handle.lower(), None)
                for record_id in self._account_tokens.pop(account_id, []):
                    self._drop_record_locked(record_id)
                self._account_locks.pop(account_id, None)
        self._persist_state()
        return True

    # -- refresh tokens ----------------------------------------------------

    def _drop_record_locked(self, record_id: str) -> None:
        record = self.refresh_tokens.pop(record_id, None)
        if record and self._tokens_by_hash.get(record.token_hash) == record_id:
            self._tokens_by_hash.pop(record.token_hash, None)

    def add_refresh_token(self, record: RefreshTokenRecord, *, keep: int) -> int:
        """Insert ``record`` and trim the account's list to ``keep`` entries.

        Returns the number of older records that were dropped.
        """
        with self._account_lock(record.account_id):
            with self._index_lock:
                if record.account_id not in self.accounts:
                    raise ConstraintViolation(
                        "account not found", {"field": "account_id"}
                    )
                self.refresh_tokens[record.id] = replace(record)
                self._tokens_by_hash[record.token_hash] = record.id
                ids = self._account_tokens.setdefault(record.account_id, [])
                ids.insert(0, record.id)
                ids.sort(
                    key=lambda rid: self.refresh_tokens[rid].created_at, reverse=True
                )
                evicted = ids[keep:]
                del ids[keep:]
                for record_id in evicted:
                    self._drop_record_locked(record_id)
        self._persist_state()
        return len(evicted)

    def find_refresh_token(
        self, token_hash: str, *, active_only: bool = False
    ) -> Optional[RefreshTokenRecord]:
        with self._index_lock:
            record_id = self._tokens_by_hash.get(token_hash)
            record = self.refresh_tokens.get(record_id) if record_id else None
            if record is None or (active_only and not record.active):
                return None
            return replace(record)

    def deactivate_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        """Flip an active record to inactive; ``None`` when it was not active."""
        with self._index_lock:
            record_id = self._tokens_by_hash.get(token_hash)
            record = self.refresh_tokens.get(record_id) if record_id else None
        if record is None:
            return None
        with self._account_lock(record.account_id):
            with self._index_lock:
                current = self.refresh_tokens.get(record.id)
                if current is None or not current.active:
                    return None
                current.active = False
                result = replace(current)
        self._persist_state()
        return result

    def touch_refresh_token(self, token_hash: str, when: datetime) -> None:
        with self._index_lock:
            record_id = self._tokens_by_hash.get(token_hash)
            record = self.refresh_tokens.get(record_id) if record_id else None
            if record is not None:
                record.last_used_at = when
        if record is not None:
            self._persist_state()

    def deactivate_account_refresh_tokens(self, account_id: str) -> int:
        count = 0
        with self._account_lock(account_id):
            with self._index_lock:
                for record_id in self._account_tokens.get(account_id, []):
                    record = self.refresh_tokens.get(record_id)
                    if record is not None and record.active:
                        record.active = False
                        count += 1
        if count:
            self._persist_state()
        return count

    def list_refresh_tokens(self, account_id: str) -> List[RefreshTokenRecord]:
        with self._index_lock:
            return [
                replace(self.refresh_tokens[record_id])
                for record_id in self._account_tokens.get(account_id, [])
                if record_id in self.refresh_tokens
            ]

    # -- persistence -------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize(obj: Any) -> Dict[str, Any]:
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in asdict(obj).items()
        }

    @staticmethod
    def _deserialize_datetime(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        with self._index_lock:
            state = {
                "accounts": [self._serialize(a) for a in self.accounts.values()],
                "refresh_tokens": [
                    self._serialize(r) for r in self.refresh_tokens.values()
                ],
            }
        path = self._state_path()
        with self._persist_lock:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as handle:
                    json.dump(state, handle, indent=2)
                os.replace(tmp_path, path)
            except OSError as exc:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for raw in data.get("accounts", []):
            account = Account(
                **{
                    **raw,
                    "lock_until": self._deserialize_datetime(raw.get("lock_until")),
                    "last_login_at": self._deserialize_datetime(raw.get("last_login_at")),
                    "created_at": self._deserialize_datetime(raw["created_at"]),
                }
            )
            self.accounts[account.id] = account
            self._handles[account.handle.lower()] = account.id
            self._account_tokens[account.id] = []
        records = []
        for raw in data.get("refresh_tokens", []):
            records.append(
                RefreshTokenRecord(
                    **{
                        **raw,
                        "expires_at": self._deserialize_datetime(raw["expires_at"]),
                        "created_at": self._deserialize_datetime(raw["created_at"]),
                        "last_used_at": self._deserialize_datetime(
                            raw.get("last_used_at")
                        ),
                    }
                )
            )
        for record in sorted(records, key=lambda r: r.created_at, reverse=True):
            if record.account_id not in self.accounts:
                continue
            self.refresh_tokens[record.id] = record
            self._tokens_by_hash.setdefault(record.token_hash, record.id)
            self._account_tokens[record.account_id].append(record.id)
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True


__all__ = ["MemoryStore"]
