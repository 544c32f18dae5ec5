"""File-backed usage store shared by the front-end sites.

All usage data lives in three flat JSON documents inside a single data
directory:

- ``unified_users.json`` — ``{"version", "lastUpdated", "users": {...}}``
  keyed by user id.  A bare ``{userId: user}`` mapping is also accepted on
  read so that older files keep working.
- ``generations.json`` — list of generation records.
- ``events.json`` — list of user events.

Records keep the camelCase keys used by the files on disk because several
sites read and write the same documents.

The store is deliberately simple.  Every operation reads the whole document,
mutates it in memory and writes it back.  There is no locking, so two
processes updating the same file can lose writes; this matches how the sites
have always shared their data.

Data Directory Resolution
-------------------------
If ``shared_data_dir`` is configured and exists, it is used.  Otherwise the
local ``data_dir`` is used and created on demand.  Listings of generations
and events additionally merge the files found in each ``peer_data_dirs``
entry (read only), so one admin dashboard can show both sites.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

USERS_FILE = "unified_users.json"
GENERATIONS_FILE = "generations.json"
EVENTS_FILE = "events.json"
USERS_SCHEMA_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Timestamp helpers.
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Format *moment* the way the shared files store timestamps.

    Example: ``2025-03-01T12:30:00.123Z``.
    """
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored ISO timestamp, returning ``None`` when it is unusable."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sort_newest_first(records: list[dict]) -> list[dict]:
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(
        records,
        key=lambda record: parse_timestamp(record.get("timestamp")) or oldest,
        reverse=True,
    )


def _sites_used(user: dict) -> list:
    # Other sites write this file and may store null or a bare string.
    sites = user.get("sitesUsed")
    if isinstance(sites, str):
        return [sites]
    return list(sites) if isinstance(sites, list) else []


# ---------------------------------------------------------------------------
# JSON persistence helpers.
# ---------------------------------------------------------------------------


def load_json(path: Path, default):
    """Load a JSON file from disk, returning *default* on any failure.

    Missing, empty and corrupt files all yield the default so that the
    store bootstraps itself on first write.

    Args:
        path: Path to the JSON file.
        default: Value to return if the file cannot be read or parsed.

    Returns:
        The parsed JSON content, or *default*.
    """
    if not path.exists():
        return default
    try:
        with open(path, encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError) as exc:
        logger.warning("Could not read %s (%s); using empty default.", path, exc)
        return default


def save_json(path: Path, data) -> None:
    """Persist a Python object to a JSON file with 2-space indentation."""
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)


# ---------------------------------------------------------------------------
# Usage store.
# ---------------------------------------------------------------------------


class UsageStore:
    """Read-modify-write access to the users, generations and events files.

    Attributes:
        data_dir: Local data directory (fallback when no shared dir exists).
        shared_data_dir: Optional shared directory preferred over
            ``data_dir`` when it exists.
        peer_data_dirs: Read-only directories whose generations and events
            are merged into listings.
        retention_days: Age cut-off used by :meth:`clean_old_data`.
        initial_credits: Credits given to users created by
            :meth:`register_visit`.
    """

    def __init__(
        self,
        data_dir: Path,
        *,
        shared_data_dir: Path | None = None,
        peer_data_dirs: list[Path] | None = None,
        retention_days: int = 30,
        initial_credits: int = 0,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.shared_data_dir = Path(shared_data_dir) if shared_data_dir else None
        self.peer_data_dirs = [Path(p) for p in peer_data_dirs or []]
        self.retention_days = retention_days
        self.initial_credits = initial_credits

    @classmethod
    def from_config(cls, config) -> UsageStore:
        """Build a store from a :class:`~comfyrelay.core.config.RelayConfig`."""
        return cls(
            config.data_dir,
            shared_data_dir=config.shared_data_dir,
            peer_data_dirs=config.peer_data_dirs,
            retention_days=config.retention_days,
            initial_credits=config.initial_credits,
        )

    # -- Paths --------------------------------------------------------------

    def resolve_data_dir(self) -> Path:
        """Return the active data directory, creating the local one if needed."""
        if self.shared_data_dir is not None and self.shared_data_dir.is_dir():
            return self.shared_data_dir
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self.data_dir

    def _path(self, filename: str) -> Path:
        return self.resolve_data_dir() / filename

    # -- Users --------------------------------------------------------------

    def _read_users(self) -> dict[str, dict]:
        raw = load_json(self._path(USERS_FILE), {})
        if not isinstance(raw, dict):
            return {}
        users = raw.get("users", raw)
        if not isinstance(users, dict):
            return {}
        return {uid: user for uid, user in users.items() if isinstance(user, dict)}

    def _write_users(self, users: dict[str, dict]) -> None:
        save_json(
            self._path(USERS_FILE),
            {
                "version": USERS_SCHEMA_VERSION,
                "lastUpdated": isoformat(utc_now()),
                "users": users,
            },
        )
        logger.debug("Unified users database updated (%d users).", len(users))

    def get_users(self) -> dict[str, dict]:
        """Return every user keyed by user id."""
        return self._read_users()

    def get_user(self, user_id: str) -> dict | None:
        return self._read_users().get(user_id)

    def register_visit(
        self,
        user_id: str,
        device_id: str,
        site: str,
        ip_address: str | None = None,
    ) -> dict:
        """Create the user on first visit, or refresh visit bookkeeping.

        New users start with ``initial_credits``.  Returning users get their
        ``lastVisitDate`` refreshed and *site* added to ``sitesUsed``.

        Returns:
            The stored user record.
        """
        users = self._read_users()
        now = isoformat(utc_now())
        user = users.get(user_id)

        if user is None:
            user = {
                "userId": user_id,
                "deviceId": device_id,
                "credits": self.initial_credits,
                "lastFreeTrialDate": None,
                "firstVisitDate": now,
                "lastVisitDate": now,
                "totalGenerations": 0,
                "totalFreeTrialsUsed": 0,
                "isBlocked": False,
                "sitesUsed": [site],
                "lastSyncDate": now,
            }
            logger.info("Registered new user %s on %s.", user_id, site)
        else:
            user["lastVisitDate"] = now
            user["lastSyncDate"] = now
            sites = _sites_used(user)
            if site not in sites:
                sites.append(site)
            user["sitesUsed"] = sites

        if ip_address:
            user["ipAddress"] = ip_address

        users[user_id] = user
        self._write_users(users)
        return user

    def _mutate_user(self, user_id: str, mutate) -> bool:
        users = self._read_users()
        user = users.get(user_id)
        if user is None:
            logger.error("User %s not found.", user_id)
            return False
        mutate(user)
        user["lastSyncDate"] = isoformat(utc_now())
        self._write_users(users)
        return True

    def update_user_credits(self, user_id: str, credits: int) -> bool:
        """Set a user's credit balance.

        Returns:
            ``False`` if the user does not exist.
        """

        def _set(user: dict) -> None:
            user["credits"] = credits

        updated = self._mutate_user(user_id, _set)
        if updated:
            logger.info("Set credits for %s to %s.", user_id, credits)
        return updated

    def add_user_credits(self, user_id: str, amount: int) -> bool:
        """Add *amount* credits to a user's balance."""

        def _add(user: dict) -> None:
            user["credits"] = user.get("credits", 0) + amount

        updated = self._mutate_user(user_id, _add)
        if updated:
            logger.info("Added %s credits to %s.", amount, user_id)
        return updated

    def block_user(self, user_id: str, blocked: bool) -> bool:
        """Block or unblock a user."""

        def _block(user: dict) -> None:
            user["isBlocked"] = blocked

        updated = self._mutate_user(user_id, _block)
        if updated:
            logger.info("%s user %s.", "Blocked" if blocked else "Unblocked", user_id)
        return updated

    # -- Generations and events ---------------------------------------------

    def _read_list(self, path: Path) -> list[dict]:
        raw = load_json(path, [])
        if not isinstance(raw, list):
            return []
        return [entry for entry in raw if isinstance(entry, dict)]

    def record_generation(
        self,
        user_id: str,
        device_id: str,
        site: str,
        success: bool,
        metadata: dict | None = None,
    ) -> dict:
        """Append a generation record.

        A successful generation also increments the user's
        ``totalGenerations`` counter (used as "credits used" in site stats).
        ``error`` and ``ipAddress`` found in *metadata* are lifted onto the
        record itself.
        """
        metadata = dict(metadata or {})
        record: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "userId": user_id,
            "deviceId": device_id,
            "site": site,
            "success": success,
            "timestamp": isoformat(utc_now()),
            "metadata": metadata,
        }
        if metadata.get("error"):
            record["error"] = metadata["error"]
        if metadata.get("ipAddress"):
            record["ipAddress"] = metadata["ipAddress"]

        path = self._path(GENERATIONS_FILE)
        generations = self._read_list(path)
        generations.append(record)
        save_json(path, generations)

        if success:

            def _count(user: dict) -> None:
                user["totalGenerations"] = user.get("totalGenerations", 0) + 1

            # Anonymous pose-site users have no user record to update.
            if self.get_user(user_id) is not None:
                self._mutate_user(user_id, _count)

        return record

    def log_user_event(
        self,
        user_id: str,
        device_id: str,
        action: str,
        site: str,
        metadata: dict | None = None,
    ) -> dict:
        """Append a user event such as ``..._generation_started``."""
        metadata = dict(metadata or {})
        event: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "userId": user_id,
            "deviceId": device_id,
            "action": action,
            "site": site,
            "timestamp": isoformat(utc_now()),
            "metadata": metadata,
        }
        if metadata.get("ipAddress"):
            event["ipAddress"] = metadata["ipAddress"]

        path = self._path(EVENTS_FILE)
        events = self._read_list(path)
        events.append(event)
        save_json(path, events)
        return event

    def _merged(self, filename: str) -> list[dict]:
        records = self._read_list(self._path(filename))
        for peer in self.peer_data_dirs:
            records.extend(self._read_list(peer / filename))
        return _sort_newest_first(records)

    def get_generations(self) -> list[dict]:
        """Return local and peer generations, newest first."""
        return self._merged(GENERATIONS_FILE)

    def get_user_events(self) -> list[dict]:
        """Return local and peer events, newest first."""
        return self._merged(EVENTS_FILE)

    # -- Reporting and maintenance ------------------------------------------

    def get_site_stats(self, site: str) -> dict:
        """Summarise usage for one site.

        Users count towards a site when it appears in their ``sitesUsed``.
        ``totalCreditsUsed`` is the sum of those users' ``totalGenerations``.
        """
        site_users = [u for u in self._read_users().values() if site in _sites_used(u)]
        site_generations = [g for g in self.get_generations() if g.get("site") == site]
        successful = sum(1 for g in site_generations if g.get("success"))

        return {
            "totalUsers": len(site_users),
            "totalGenerations": len(site_generations),
            "totalSuccessfulGenerations": successful,
            "totalFailedGenerations": len(site_generations) - successful,
            "totalCreditsUsed": sum(u.get("totalGenerations", 0) for u in site_users),
            "lastUpdated": isoformat(utc_now()),
        }

    def clean_old_data(self, now: datetime | None = None) -> dict:
        """Drop local generations and events older than the retention window.

        Records whose timestamp cannot be parsed are dropped as well.  Peer
        directories are never modified.

        Returns:
            ``{"generationsRemoved": int, "eventsRemoved": int}``.
        """
        cutoff = (now or utc_now()) - timedelta(days=self.retention_days)
        removed = {}

        for filename, key in (
            (GENERATIONS_FILE, "generationsRemoved"),
            (EVENTS_FILE, "eventsRemoved"),
        ):
            path = self._path(filename)
            records = self._read_list(path)
            recent = [
                r for r in records if (parse_timestamp(r.get("timestamp")) or cutoff) > cutoff
            ]
            save_json(path, recent)
            removed[key] = len(records) - len(recent)

        logger.info(
            "Old data cleaned: %d generations, %d events removed.",
            removed["generationsRemoved"],
            removed["eventsRemoved"],
        )
        return removed
