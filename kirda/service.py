import secrets
import string
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterator, Optional

from loguru import logger
from werkzeug.security import check_password_hash, generate_password_hash

from .config import (
    MIN_WITHDRAWAL,
    REFERRAL_CODE_ATTEMPTS,
    REFERRAL_CODE_LENGTH,
    REFERRAL_CODE_PREFIX,
    REFERRAL_COMMISSION_RATE,
)
from .models import (
    AdminMessage,
    CreateAdminMessageRequest,
    CreateGameRequest,
    CreateHelpRequest,
    CreateTournamentRequest,
    DepositResponse,
    Game,
    HelpRequest,
    HelpRequestStatus,
    JoinTournamentResponse,
    RegisterRequest,
    Tournament,
    TournamentEntry,
    TournamentWithGame,
    Transaction,
    TransactionHistoryResponse,
    TransactionType,
    UpdateHelpRequest,
    UserProfile,
    UserStats,
    WalletName,
    WithdrawalResponse,
    parse_order_user_id,
    to_amount,
)
from .storage import InMemoryStorage, ZERO


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class TournamentNotFoundError(NotFoundError):
    pass


class GameNotFoundError(NotFoundError):
    pass


class HelpRequestNotFoundError(NotFoundError):
    pass


class ConflictError(LedgerServiceError):
    pass


class DuplicateUsernameError(ConflictError):
    pass


class TournamentFullError(ConflictError):
    pass


class InvalidInputError(LedgerServiceError):
    pass


class InvalidAmountError(InvalidInputError):
    pass


class BelowMinimumError(InvalidInputError):
    pass


class InvalidReferralCodeError(InvalidInputError):
    pass


class InvalidStateTransitionError(InvalidInputError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class InvalidCredentialsError(LedgerServiceError):
    pass


REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits


def split_entry_fee(deposit: Decimal, referral: Decimal, fee: Decimal) -> tuple[Decimal, Decimal]:
    """Return the (deposit, referral) balances left after paying ``fee``.

    The deposit wallet pays first and in full when it can; otherwise it is
    emptied and the referral wallet covers the shortfall.
    """
    if deposit + referral < fee:
        raise InsufficientBalanceError(
            f"Insufficient balance: entry fee {fee} exceeds available {deposit + referral}"
        )
    if deposit >= fee:
        return to_amount(deposit - fee), to_amount(referral)
    return ZERO, to_amount(referral - (fee - deposit))


def win_rate(wins: int, tournaments_played: int) -> str:
    if tournaments_played <= 0:
        return "0%"
    percent = (Decimal(wins) * 100 / Decimal(tournaments_played)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"{percent}%"


class LedgerService:
    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    # Accounts

    def register_user(self, request: RegisterRequest) -> UserProfile:
        referred_by = (request.referral_code or "").strip() or None

        with self.storage.accounts_lock:
            if self.storage.find_user_by_username(request.username):
                raise DuplicateUsernameError(f"Username {request.username} already exists")
            if referred_by and not self.storage.find_user_by_referral_code(referred_by):
                raise InvalidReferralCodeError(f"Invalid referral code {referred_by}")

            user_id = self.storage.next_id("users")
            user_data = {
                "id": user_id,
                "username": request.username,
                "password_hash": generate_password_hash(request.password),
                "referral_code": self._generate_referral_code(),
                "referred_by": referred_by,
                "deposit_wallet": ZERO,
                "withdrawal_wallet": ZERO,
                "referral_wallet": ZERO,
                "total_earned": ZERO,
                "total_referrals": 0,
                "tournaments_played": 0,
                "wins": 0,
                "created_at": datetime.now(timezone.utc),
            }
            self.storage.users[user_id] = user_data

        logger.info(f"Registered user {user_id} ({request.username}), referred_by={referred_by}")
        return UserProfile(**user_data)

    def authenticate(self, username: str, password: str) -> UserProfile:
        user_data = self.storage.find_user_by_username(username)
        if not user_data or not check_password_hash(user_data["password_hash"], password):
            raise InvalidCredentialsError("Invalid credentials")
        return UserProfile(**user_data)

    def get_user(self, user_id: int) -> UserProfile:
        return UserProfile(**self._get_user_record(user_id))

    def list_users(self) -> list[UserProfile]:
        return [UserProfile(**u) for u in self.storage.users.values()]

    def get_user_stats(self, user_id: int) -> UserStats:
        user_data = self.storage.users.get(user_id)
        if not user_data:
            return UserStats(tournaments_played=0, wins=0, win_rate="0%", total_earned=ZERO)
        return UserStats(
            tournaments_played=user_data["tournaments_played"],
            wins=user_data["wins"],
            win_rate=win_rate(user_data["wins"], user_data["tournaments_played"]),
            total_earned=user_data["total_earned"],
        )

    # Wallet operations

    def credit_deposit(
        self,
        user_id: int,
        amount,
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> DepositResponse:
        """Credit the deposit wallet and pay the referrer's commission.

        A deposit whose ``reference_id`` is already on the user's transaction
        log is not applied again; the result comes back with
        ``already_processed`` set.
        """
        amount = self._validate_amount(amount)
        reference_id = reference_id or self._local_reference("DEP")

        user_data = self._get_user_record(user_id)
        with self.storage.user_lock(user_id):
            existing = self._find_transaction_by_reference(user_id, reference_id)
            if existing:
                logger.info(f"Deposit {reference_id} for user {user_id} already processed, skipping")
                return DepositResponse(
                    user_id=user_id,
                    new_balance=user_data["deposit_wallet"],
                    transaction=existing,
                    already_processed=True,
                    message="Payment already processed",
                )

            transaction = self._credit_wallet(
                user_data, WalletName.DEPOSIT, amount, TransactionType.DEPOSIT,
                description or f"Deposit of ₹{amount}", reference_id,
            )
            new_balance = user_data["deposit_wallet"]
            username = user_data["username"]
            referred_by = user_data["referred_by"]

        logger.info(f"Credited ₹{amount} to user {user_id} deposit wallet (ref {reference_id})")
        referral_transaction = self._propagate_referral_commission(username, referred_by, amount, reference_id)

        return DepositResponse(
            user_id=user_id,
            new_balance=new_balance,
            transaction=transaction,
            referral_transaction=referral_transaction,
            message="Deposit successful",
        )

    def apply_gateway_deposit(self, order_id: str, amount, source: str = "Cashfree") -> DepositResponse:
        user_id = parse_order_user_id(order_id)
        if user_id is None:
            raise InvalidInputError(f"Malformed order id {order_id}")
        amount = self._validate_amount(amount)
        return self.credit_deposit(
            user_id, amount, reference_id=order_id,
            description=f"Deposit of ₹{amount} via {source}",
        )

    @contextmanager
    def user_session(self, user_id: int) -> Iterator[UserProfile]:
        """Hold the user's lock across several ledger calls.

        Used by callers that must keep a balance check and the matching
        debit atomic around work done outside the ledger, such as a payout
        request. Ledger methods called inside re-enter the same lock.
        """
        user_data = self._get_user_record(user_id)
        with self.storage.user_lock(user_id):
            yield UserProfile(**user_data)

    def validate_withdrawal(self, user_id: int, amount) -> Decimal:
        amount = self._validate_amount(amount)
        self._check_withdrawal(self._get_user_record(user_id), amount)
        return amount

    def debit_withdrawal(
        self,
        user_id: int,
        amount,
        reference_id: Optional[str] = None,
        transfer_status: str = "PENDING",
    ) -> WithdrawalResponse:
        amount = self._validate_amount(amount)
        reference_id = reference_id or self._local_reference("WTH")

        user_data = self._get_user_record(user_id)
        with self.storage.user_lock(user_id):
            self._check_withdrawal(user_data, amount)
            user_data["withdrawal_wallet"] = to_amount(user_data["withdrawal_wallet"] - amount)
            transaction = self._record_transaction(
                user_id, TransactionType.WITHDRAWAL, -amount,
                f"Withdrawal of ₹{amount}", reference_id,
            )
            new_balance = user_data["withdrawal_wallet"]

        logger.info(f"Debited ₹{amount} from user {user_id} withdrawal wallet (ref {reference_id})")
        return WithdrawalResponse(
            message="Withdrawal request submitted successfully",
            new_balance=new_balance,
            transaction=transaction,
            transfer_id=reference_id,
            status=transfer_status,
        )

    def join_tournament(self, tournament_id: int, user_id: int) -> JoinTournamentResponse:
        tournament_data = self._get_tournament_record(tournament_id)
        user_data = self._get_user_record(user_id)

        with self.storage.user_lock(user_id), self.storage.tournament_lock(tournament_id):
            if tournament_data["current_players"] >= tournament_data["max_players"]:
                raise TournamentFullError(f"Tournament {tournament_id} is full")

            fee = to_amount(tournament_data["entry_fee"])
            new_deposit, new_referral = split_entry_fee(
                user_data["deposit_wallet"], user_data["referral_wallet"], fee
            )

            user_data["deposit_wallet"] = new_deposit
            user_data["referral_wallet"] = new_referral

            entry_id = self.storage.next_id("tournament_entries")
            entry_data = {
                "id": entry_id,
                "tournament_id": tournament_id,
                "user_id": user_id,
                "entry_fee": fee,
                "position": None,
                "prize": None,
                "created_at": datetime.now(timezone.utc),
            }
            self.storage.tournament_entries[entry_id] = entry_data
            tournament_data["current_players"] += 1
            user_data["tournaments_played"] += 1

            transaction = self._record_transaction(
                user_id, TransactionType.TOURNAMENT_ENTRY, -fee,
                f"Tournament entry: {tournament_data['name']}", f"TNT_{entry_id}",
            )

        logger.info(f"User {user_id} joined tournament {tournament_id} for ₹{fee}")
        return JoinTournamentResponse(
            message="Successfully joined tournament",
            entry=TournamentEntry(**entry_data),
            transaction=transaction,
            deposit_wallet=new_deposit,
            referral_wallet=new_referral,
        )

    # Transactions

    def get_user_transactions(
        self, user_id: int, limit: Optional[int] = None, offset: int = 0
    ) -> TransactionHistoryResponse:
        entries = self._newest_first(self.storage.transactions_for_user(user_id))
        page = entries[offset:] if limit is None else entries[offset:offset + limit]
        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=[Transaction(**t) for t in page],
            total_count=len(entries),
        )

    def get_all_transactions(self) -> list[Transaction]:
        return [Transaction(**t) for t in self._newest_first(self.storage.transactions.values())]

    # Games and tournaments

    def list_games(self) -> list[Game]:
        return [Game(**g) for g in self.storage.games.values() if g["is_active"]]

    def get_game(self, game_id: int) -> Game:
        game_data = self.storage.games.get(game_id)
        if not game_data:
            raise GameNotFoundError(f"Game {game_id} not found")
        return Game(**game_data)

    def create_game(self, request: CreateGameRequest) -> Game:
        game_id = self.storage.next_id("games")
        game_data = {
            "id": game_id,
            **request.model_dump(),
            "is_active": True,
            "created_at": datetime.now(timezone.utc),
        }
        self.storage.games[game_id] = game_data
        return Game(**game_data)

    def list_tournaments(self, game_id: Optional[int] = None) -> list[TournamentWithGame]:
        tournaments = [
            t for t in self.storage.tournaments.values()
            if game_id is None or t["game_id"] == game_id
        ]
        return [
            TournamentWithGame(**t, game=Game(**self.storage.games[t["game_id"]]))
            for t in tournaments
        ]

    def get_tournament(self, tournament_id: int) -> Tournament:
        return Tournament(**self._get_tournament_record(tournament_id))

    def create_tournament(self, request: CreateTournamentRequest) -> Tournament:
        if request.game_id not in self.storage.games:
            raise GameNotFoundError(f"Game {request.game_id} not found")

        tournament_id = self.storage.next_id("tournaments")
        tournament_data = {
            "id": tournament_id,
            **request.model_dump(),
            "entry_fee": to_amount(request.entry_fee),
            "prize_pool": to_amount(request.prize_pool),
            "current_players": 0,
            "status": "upcoming",
            "created_at": datetime.now(timezone.utc),
        }
        self.storage.tournaments[tournament_id] = tournament_data
        logger.info(f"Created tournament {tournament_id} ({request.name}) with entry fee ₹{tournament_data['entry_fee']}")
        return Tournament(**tournament_data)

    def get_tournament_entries(self, tournament_id: int) -> list[TournamentEntry]:
        return [
            TournamentEntry(**e) for e in self.storage.tournament_entries.values()
            if e["tournament_id"] == tournament_id
        ]

    def get_user_entries(self, user_id: int) -> list[TournamentEntry]:
        return [
            TournamentEntry(**e) for e in self.storage.tournament_entries.values()
            if e["user_id"] == user_id
        ]

    # Support

    def create_help_request(self, request: CreateHelpRequest) -> HelpRequest:
        self._get_user_record(request.user_id)
        if request.tournament_id is not None:
            self._get_tournament_record(request.tournament_id)

        now = datetime.now(timezone.utc)
        request_id = self.storage.next_id("help_requests")
        help_data = {
            "id": request_id,
            **request.model_dump(),
            "status": HelpRequestStatus.OPEN,
            "admin_response": None,
            "created_at": now,
            "updated_at": now,
        }
        self.storage.help_requests[request_id] = help_data
        return HelpRequest(**help_data)

    def list_help_requests(self) -> list[HelpRequest]:
        return [HelpRequest(**h) for h in self._newest_first(self.storage.help_requests.values())]

    def update_help_request(self, request_id: int, request: UpdateHelpRequest) -> HelpRequest:
        help_data = self.storage.help_requests.get(request_id)
        if not help_data:
            raise HelpRequestNotFoundError(f"Help request {request_id} not found")

        current = HelpRequest(**help_data)
        if not current.can_resolve():
            raise InvalidStateTransitionError(f"Help request {request_id} is already resolved")

        help_data["status"] = request.status
        if request.admin_response:
            help_data["admin_response"] = request.admin_response
        help_data["updated_at"] = datetime.now(timezone.utc)
        return HelpRequest(**help_data)

    def create_admin_message(self, request: CreateAdminMessageRequest) -> AdminMessage:
        message_id = self.storage.next_id("admin_messages")
        message_data = {
            "id": message_id,
            **request.model_dump(),
            "is_active": True,
            "created_at": datetime.now(timezone.utc),
        }
        self.storage.admin_messages[message_id] = message_data
        return AdminMessage(**message_data)

    def list_active_messages(self) -> list[AdminMessage]:
        return [AdminMessage(**m) for m in self.storage.admin_messages.values() if m["is_active"]]

    # Internals

    def _propagate_referral_commission(
        self,
        depositor_username: str,
        referred_by: Optional[str],
        amount: Decimal,
        reference_id: str,
    ) -> Optional[Transaction]:
        if not referred_by:
            return None

        referrer = self.storage.find_user_by_referral_code(referred_by)
        if referrer is None:
            logger.warning(f"Referral code {referred_by} of {depositor_username} resolves to no user")
            return None

        commission = to_amount(amount * REFERRAL_COMMISSION_RATE)
        if commission <= 0:
            return None

        with self.storage.user_lock(referrer["id"]):
            referrer["total_earned"] = to_amount(referrer["total_earned"] + commission)
            referrer["total_referrals"] += 1
            transaction = self._credit_wallet(
                referrer, WalletName.REFERRAL, commission, TransactionType.REFERRAL_BONUS,
                f"Referral commission from {depositor_username}", f"REF_{reference_id}",
            )

        logger.info(f"Paid ₹{commission} referral commission to user {referrer['id']} (ref REF_{reference_id})")
        return transaction

    def _credit_wallet(
        self,
        user_data: dict,
        wallet: WalletName,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        reference_id: str,
    ) -> Transaction:
        user_data[wallet.value] = to_amount(user_data[wallet.value] + amount)
        return self._record_transaction(user_data["id"], transaction_type, amount, description, reference_id)

    def _record_transaction(
        self,
        user_id: int,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
        reference_id: Optional[str],
    ) -> Transaction:
        transaction_id = self.storage.next_id("transactions")
        transaction_data = {
            "id": transaction_id,
            "user_id": user_id,
            "type": transaction_type,
            "amount": to_amount(amount),
            "description": description,
            "reference_id": reference_id,
            "status": "completed",
            "created_at": datetime.now(timezone.utc),
        }
        self.storage.transactions[transaction_id] = transaction_data
        return Transaction(**transaction_data)

    def _check_withdrawal(self, user_data: dict, amount: Decimal) -> None:
        if amount > user_data["withdrawal_wallet"]:
            raise InsufficientBalanceError(
                f"Insufficient balance: withdrawal wallet holds {user_data['withdrawal_wallet']}"
            )
        if amount < MIN_WITHDRAWAL:
            raise BelowMinimumError(f"Minimum withdrawal amount is ₹{MIN_WITHDRAWAL}")

    def _find_transaction_by_reference(self, user_id: int, reference_id: str) -> Optional[Transaction]:
        for transaction_data in self.storage.transactions_for_user(user_id):
            if transaction_data["reference_id"] == reference_id:
                return Transaction(**transaction_data)
        return None

    def _get_user_record(self, user_id: int) -> dict:
        user_data = self.storage.users.get(user_id)
        if not user_data:
            raise UserNotFoundError(f"User {user_id} not found")
        return user_data

    def _get_tournament_record(self, tournament_id: int) -> dict:
        tournament_data = self.storage.tournaments.get(tournament_id)
        if not tournament_data:
            raise TournamentNotFoundError(f"Tournament {tournament_id} not found")
        return tournament_data

    def _generate_referral_code(self) -> str:
        for _ in range(REFERRAL_CODE_ATTEMPTS):
            suffix = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
            code = f"{REFERRAL_CODE_PREFIX}{suffix}"
            if not self.storage.find_user_by_referral_code(code):
                return code
        raise LedgerServiceError("Could not generate a unique referral code")

    @staticmethod
    def _validate_amount(amount) -> Decimal:
        try:
            value = Decimal(str(amount)) if not isinstance(amount, Decimal) else amount
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(f"Invalid amount {amount!r}")
        if not value.is_finite() or value <= 0:
            raise InvalidAmountError(f"Amount must be a positive number, got {amount}")
        if value != to_amount(value):
            raise InvalidAmountError(f"Amount {amount} has more than two decimal places")
        return to_amount(value)

    @staticmethod
    def _local_reference(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:16].upper()}"

    @staticmethod
    def _newest_first(records) -> list[dict]:
        return sorted(records, key=lambda r: (r["created_at"], r["id"]), reverse=True)
