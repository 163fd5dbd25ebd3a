from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

TWO_PLACES = Decimal("0.01")


def to_amount(value) -> Decimal:
    """Coerce a number or numeric string to a Decimal with exactly two places."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TOURNAMENT_ENTRY = "tournament_entry"
    REFERRAL_BONUS = "referral_bonus"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"


class TournamentStatus(str, Enum):
    UPCOMING = "upcoming"
    LIVE = "live"
    COMPLETED = "completed"


class HelpRequestStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class WalletName(str, Enum):
    DEPOSIT = "deposit_wallet"
    WITHDRAWAL = "withdrawal_wallet"
    REFERRAL = "referral_wallet"


# Entities

class User(BaseModel):
    id: int
    username: str
    password_hash: str
    referral_code: str
    referred_by: Optional[str] = None
    deposit_wallet: Decimal
    withdrawal_wallet: Decimal
    referral_wallet: Decimal
    total_earned: Decimal
    total_referrals: int = 0
    tournaments_played: int = 0
    wins: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserProfile(BaseModel):
    """Public view of a user; never carries the password hash."""
    id: int
    username: str
    referral_code: str
    referred_by: Optional[str] = None
    deposit_wallet: Decimal
    withdrawal_wallet: Decimal
    referral_wallet: Decimal
    total_earned: Decimal
    total_referrals: int
    tournaments_played: int
    wins: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserStats(BaseModel):
    tournaments_played: int
    wins: int
    win_rate: str
    total_earned: Decimal


class Game(BaseModel):
    id: int
    name: str
    display_name: str
    icon: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Tournament(BaseModel):
    id: int
    game_id: int
    name: str
    description: Optional[str] = None
    entry_fee: Decimal
    prize_pool: Decimal
    max_players: int
    current_players: int = 0
    start_time: datetime
    status: TournamentStatus = TournamentStatus.UPCOMING
    rules: Optional[str] = None
    map_name: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_full(self) -> bool:
        return self.current_players >= self.max_players


class TournamentWithGame(Tournament):
    game: Game


class TournamentEntry(BaseModel):
    id: int
    tournament_id: int
    user_id: int
    entry_fee: Decimal
    position: Optional[int] = None
    prize: Optional[Decimal] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: int
    user_id: int
    type: TransactionType
    amount: Decimal
    description: str
    reference_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class HelpRequest(BaseModel):
    id: int
    user_id: int
    subject: str
    message: str
    tournament_id: Optional[int] = None
    status: HelpRequestStatus = HelpRequestStatus.OPEN
    admin_response: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_resolve(self) -> bool:
        return self.status == HelpRequestStatus.OPEN


class AdminMessage(BaseModel):
    id: int
    title: str
    message: str
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Requests

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1)
    referral_code: Optional[str] = Field(default=None, description="Referral code of the inviting user")

    model_config = ConfigDict(json_schema_extra={
        "example": {"username": "sniper99", "password": "hunter2", "referral_code": "KIRDAX7Q2M"}
    })


class LoginRequest(BaseModel):
    username: str
    password: str


class CreateOrderRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(..., gt=0)
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1)


class DepositRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(..., gt=0)


class WithdrawRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(..., gt=0)
    bank_account: str
    ifsc: str
    account_holder_name: Optional[str] = None


class JoinTournamentRequest(BaseModel):
    tournament_id: int
    user_id: int


class CreateGameRequest(BaseModel):
    name: str
    display_name: str
    icon: Optional[str] = None
    description: Optional[str] = None


class CreateTournamentRequest(BaseModel):
    game_id: int
    name: str
    description: Optional[str] = None
    entry_fee: Decimal = Field(..., gt=0)
    prize_pool: Decimal = Field(..., ge=0)
    max_players: int = Field(..., gt=0)
    start_time: datetime
    rules: Optional[str] = None
    map_name: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "game_id": 1,
            "name": "Squad Championship",
            "entry_fee": "50.00",
            "prize_pool": "5000.00",
            "max_players": 100,
            "start_time": "2026-01-01T18:00:00Z",
            "map_name": "Bermuda"
        }
    })


class CreateHelpRequest(BaseModel):
    user_id: int
    subject: str
    message: str
    tournament_id: Optional[int] = None


class UpdateHelpRequest(BaseModel):
    status: HelpRequestStatus
    admin_response: Optional[str] = None


class CreateAdminMessageRequest(BaseModel):
    title: str
    message: str


# Responses

class AuthResponse(BaseModel):
    user: UserProfile


class DepositResponse(BaseModel):
    user_id: int
    new_balance: Decimal
    transaction: Optional[Transaction] = None
    referral_transaction: Optional[Transaction] = None
    already_processed: bool = False
    message: str


class WithdrawalResponse(BaseModel):
    message: str
    new_balance: Decimal
    transaction: Transaction
    transfer_id: Optional[str] = None
    status: str = "PENDING"


class JoinTournamentResponse(BaseModel):
    message: str
    entry: TournamentEntry
    transaction: Transaction
    deposit_wallet: Decimal
    referral_wallet: Decimal


class OrderResponse(BaseModel):
    order_id: str
    payment_session_id: str
    amount: Decimal
    currency: str


class PaymentVerificationResponse(BaseModel):
    success: bool
    message: str
    status: str
    new_balance: Optional[Decimal] = None
    already_processed: bool = False


class TransactionHistoryResponse(BaseModel):
    user_id: int
    transactions: list[Transaction]
    total_count: int


def build_order_id(user_id: int, timestamp_ms: int, prefix: str = "KIRDA") -> str:
    return f"{prefix}_{user_id}_{timestamp_ms}"


def parse_order_user_id(order_id: str) -> Optional[int]:
    """Extract the user id from a ``<PREFIX>_<userId>_<millis>`` order id."""
    parts = order_id.split("_")
    if len(parts) != 3 or not parts[1].isdigit():
        return None
    return int(parts[1])
