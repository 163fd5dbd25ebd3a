import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterator, Optional

ZERO = Decimal("0.00")


class InMemoryStorage:
    """Process-local tables keyed by auto-incrementing integer ids.

    Every table holds plain dicts. Mutations of a user or tournament row
    must happen while holding that row's lock (see ``user_lock`` and
    ``tournament_lock``).
    """

    def __init__(self, seed: bool = True):
        self.users: dict[int, dict] = {}
        self.games: dict[int, dict] = {}
        self.tournaments: dict[int, dict] = {}
        self.tournament_entries: dict[int, dict] = {}
        self.transactions: dict[int, dict] = {}
        self.help_requests: dict[int, dict] = {}
        self.admin_messages: dict[int, dict] = {}

        self._counters: dict[str, int] = {}
        self._counter_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._user_locks: dict[int, threading.RLock] = {}
        self._tournament_locks: dict[int, threading.RLock] = {}
        self.accounts_lock = threading.RLock()

        if seed:
            self._seed_data()

    def next_id(self, table: str) -> int:
        with self._counter_lock:
            value = self._counters.get(table, 0) + 1
            self._counters[table] = value
            return value

    @contextmanager
    def user_lock(self, user_id: int) -> Iterator[None]:
        with self._lock_for(self._user_locks, self.users, user_id):
            yield

    @contextmanager
    def tournament_lock(self, tournament_id: int) -> Iterator[None]:
        with self._lock_for(self._tournament_locks, self.tournaments, tournament_id):
            yield

    def _lock_for(self, registry: dict, table: dict, key: int) -> threading.RLock:
        # Rows are never deleted, so a lock is only created for a stored row
        with self._registry_lock:
            lock = registry.get(key)
            if lock is None:
                if key not in table:
                    raise KeyError(key)
                lock = registry[key] = threading.RLock()
            return lock

    def find_user_by_username(self, username: str) -> Optional[dict]:
        for user in self.users.values():
            if user["username"] == username:
                return user
        return None

    def find_user_by_referral_code(self, referral_code: str) -> Optional[dict]:
        for user in self.users.values():
            if user["referral_code"] == referral_code:
                return user
        return None

    def transactions_for_user(self, user_id: int) -> list[dict]:
        return [t for t in self.transactions.values() if t["user_id"] == user_id]

    def _seed_data(self):
        now = datetime.now(timezone.utc)

        for name, display_name, icon, description in (
            ("freefire", "Free Fire", "fas fa-fire", "Battle Royale"),
            ("bgmi", "BGMI", "fas fa-crosshairs", "Battle Royale"),
            ("codm", "Call of Duty Mobile", "fas fa-skull", "FPS"),
        ):
            game_id = self.next_id("games")
            self.games[game_id] = {
                "id": game_id, "name": name, "display_name": display_name,
                "icon": icon, "description": description,
                "is_active": True, "created_at": now,
            }

        for game_id, name, description, fee, pool, max_players, current, hours, rules, map_name in (
            (1, "Squad Championship", "4v4 Squad Battle", "50.00", "5000.00", 100, 24, 2,
             "No cheating, fair play only", "Bermuda"),
            (2, "Solo Victory", "Solo Battle Royale", "30.00", "3000.00", 50, 12, 4,
             "Solo gameplay only", "Erangel"),
        ):
            tournament_id = self.next_id("tournaments")
            self.tournaments[tournament_id] = {
                "id": tournament_id, "game_id": game_id, "name": name,
                "description": description,
                "entry_fee": Decimal(fee), "prize_pool": Decimal(pool),
                "max_players": max_players, "current_players": current,
                "start_time": now + timedelta(hours=hours),
                "status": "upcoming", "rules": rules, "map_name": map_name,
                "created_at": now,
            }
