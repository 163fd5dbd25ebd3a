import json
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from loguru import logger
from werkzeug.security import check_password_hash

from . import config
from .cashfree import CashfreeClient, PaymentGatewayError, get_cashfree_client
from .logging_config import setup_logging
from .models import (
    AdminMessage, AuthResponse, CreateAdminMessageRequest, CreateGameRequest,
    CreateHelpRequest, CreateOrderRequest, CreateTournamentRequest, DepositRequest,
    DepositResponse, Game, HelpRequest, JoinTournamentRequest, JoinTournamentResponse,
    LoginRequest, OrderResponse, PaymentVerificationResponse, RegisterRequest,
    Tournament, TournamentEntry, TournamentWithGame, Transaction,
    TransactionHistoryResponse, UpdateHelpRequest, UserProfile, UserStats,
    VerifyPaymentRequest, WithdrawalResponse, WithdrawRequest, to_amount,
)
from .service import (
    ConflictError, InvalidCredentialsError, LedgerService, LedgerServiceError, NotFoundError,
)

setup_logging()

app = FastAPI(
    title="Kirda Tournaments API",
    description="Wallet ledger, tournament entry and Cashfree payments for Kirda",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService()
basic_auth = HTTPBasic()


def get_ledger_service() -> LedgerService:
    return ledger_service


def get_payment_gateway() -> CashfreeClient:
    return get_cashfree_client()


def require_admin(credentials: HTTPBasicCredentials = Depends(basic_auth)) -> str:
    username_ok = secrets.compare_digest(credentials.username.encode(), config.ADMIN_USERNAME.encode())
    password_ok = bool(config.ADMIN_PASSWORD_HASH) and check_password_hash(
        config.ADMIN_PASSWORD_HASH, credentials.password
    )
    if not (username_ok and password_ok):
        logger.warning(f"Rejected admin login for {credentials.username!r}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def _ledger_error_status(error: LedgerServiceError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, InvalidCredentialsError):
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(LedgerServiceError)
async def handle_ledger_error(request: Request, exc: LedgerServiceError) -> JSONResponse:
    return JSONResponse(status_code=_ledger_error_status(exc), content={"detail": str(exc)})


@app.exception_handler(PaymentGatewayError)
async def handle_gateway_error(request: Request, exc: PaymentGatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": exc.message, "upstream_status": exc.status_code},
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "kirda-tournaments"}


# Auth and users

@app.post("/api/auth/register", response_model=AuthResponse, tags=["Auth"])
def register(request: RegisterRequest, ledger: LedgerService = Depends(get_ledger_service)) -> AuthResponse:
    return AuthResponse(user=ledger.register_user(request))


@app.post("/api/auth/login", response_model=AuthResponse, tags=["Auth"])
def login(request: LoginRequest, ledger: LedgerService = Depends(get_ledger_service)) -> AuthResponse:
    return AuthResponse(user=ledger.authenticate(request.username, request.password))


@app.get("/api/user/{user_id}", response_model=UserProfile, tags=["Users"])
def get_user(user_id: int, ledger: LedgerService = Depends(get_ledger_service)) -> UserProfile:
    return ledger.get_user(user_id)


@app.get("/api/user/{user_id}/stats", response_model=UserStats, tags=["Users"])
def get_user_stats(user_id: int, ledger: LedgerService = Depends(get_ledger_service)) -> UserStats:
    return ledger.get_user_stats(user_id)


@app.get("/api/user/{user_id}/entries", response_model=list[TournamentEntry], tags=["Users"])
def get_user_entries(user_id: int, ledger: LedgerService = Depends(get_ledger_service)) -> list[TournamentEntry]:
    ledger.get_user(user_id)
    return ledger.get_user_entries(user_id)


@app.get("/api/transactions/{user_id}", response_model=TransactionHistoryResponse, tags=["Users"])
def get_user_transactions(
    user_id: int,
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    ledger: LedgerService = Depends(get_ledger_service),
) -> TransactionHistoryResponse:
    return ledger.get_user_transactions(user_id, limit, offset)


# Payments

@app.post("/api/payment/create-order", response_model=OrderResponse, tags=["Payments"])
def create_payment_order(
    request: CreateOrderRequest,
    ledger: LedgerService = Depends(get_ledger_service),
    gateway: CashfreeClient = Depends(get_payment_gateway),
) -> OrderResponse:
    if request.amount < config.MIN_DEPOSIT:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid amount. Minimum deposit is ₹{config.MIN_DEPOSIT}",
        )
    user = ledger.get_user(request.user_id)
    order = gateway.create_order(
        user.id, to_amount(request.amount), user.username,
        customer_email=request.customer_email, customer_phone=request.customer_phone,
    )
    return OrderResponse(**order.model_dump())


@app.post("/api/payment/verify", response_model=PaymentVerificationResponse, tags=["Payments"])
def verify_payment(
    request: VerifyPaymentRequest,
    ledger: LedgerService = Depends(get_ledger_service),
    gateway: CashfreeClient = Depends(get_payment_gateway),
) -> PaymentVerificationResponse:
    payment = gateway.verify_payment(request.order_id)
    if not payment.is_paid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"success": False, "message": "Payment not completed", "status": payment.status},
        )

    result = ledger.apply_gateway_deposit(request.order_id, payment.amount, source="Cashfree")
    return PaymentVerificationResponse(
        success=True,
        message="Payment already processed" if result.already_processed else "Payment verified and deposit successful",
        status=payment.status,
        new_balance=result.new_balance,
        already_processed=result.already_processed,
    )


def _parse_webhook_payload(payload: dict) -> tuple[Optional[str], Optional[str], Optional[object]]:
    """Return (order_id, order_status, amount) from a flat or nested Cashfree payload."""
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("order"), dict):
        order = data["order"]
        payment = data.get("payment") or {}
        payment_status = payment.get("payment_status")
        return order.get("order_id"), "PAID" if payment_status == "SUCCESS" else payment_status, order.get("order_amount")
    return payload.get("order_id"), payload.get("order_status"), payload.get("order_amount")


@app.post("/api/payment/webhook", tags=["Payments"])
async def payment_webhook(
    request: Request,
    ledger: LedgerService = Depends(get_ledger_service),
    gateway: CashfreeClient = Depends(get_payment_gateway),
):
    raw_body = await request.body()

    if config.CASHFREE_VERIFY_WEBHOOKS and not gateway.verify_webhook_signature(
        raw_body,
        request.headers.get("x-webhook-timestamp"),
        request.headers.get("x-webhook-signature"),
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook body")

    order_id, order_status, amount = _parse_webhook_payload(payload)
    logger.info(f"Cashfree webhook: order_id={order_id}, status={order_status}")

    if order_status == "PAID" and order_id and amount is not None:
        try:
            ledger.apply_gateway_deposit(order_id, amount, source="Cashfree Webhook")
        except LedgerServiceError as e:
            # Cashfree redelivers on any non-2xx answer
            logger.warning(f"Webhook for order {order_id} ignored: {e}")

    return {"success": True}


@app.get("/payment-success", tags=["Payments"])
def payment_success(order_id: Optional[str] = None, payment_status: Optional[str] = Query(None, alias="status")):
    return RedirectResponse(f"/?page=payment-success&order_id={order_id}&status={payment_status}")


# Wallet

@app.post("/api/wallet/deposit", response_model=DepositResponse, tags=["Wallet"])
def direct_deposit(request: DepositRequest, ledger: LedgerService = Depends(get_ledger_service)) -> DepositResponse:
    if not config.DIRECT_DEPOSITS_ENABLED:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Direct deposits are disabled")
    return ledger.credit_deposit(request.user_id, request.amount)


@app.post("/api/wallet/withdraw", response_model=WithdrawalResponse, tags=["Wallet"])
def withdraw(
    request: WithdrawRequest,
    ledger: LedgerService = Depends(get_ledger_service),
    gateway: CashfreeClient = Depends(get_payment_gateway),
) -> WithdrawalResponse:
    # One withdrawal per user at a time, from the balance check to the debit
    with ledger.user_session(request.user_id) as user:
        amount = ledger.validate_withdrawal(user.id, request.amount)

        bene_id = gateway.add_beneficiary(
            user.id, request.account_holder_name or user.username, request.bank_account, request.ifsc
        )
        transfer = gateway.request_withdrawal(
            user.id, amount, bene_id, f"Withdrawal of ₹{amount} from gaming platform"
        )

        try:
            return ledger.debit_withdrawal(
                user.id, amount, reference_id=transfer.transfer_id, transfer_status=transfer.status
            )
        except LedgerServiceError:
            logger.error(f"Payout {transfer.transfer_id} was requested but the wallet debit for user {user.id} failed")
            raise


@app.get("/api/withdrawal/status/{transfer_id}", tags=["Wallet"])
def withdrawal_status(transfer_id: str, gateway: CashfreeClient = Depends(get_payment_gateway)):
    return {"status": gateway.get_withdrawal_status(transfer_id)}


# Games and tournaments

@app.get("/api/games", response_model=list[Game], tags=["Tournaments"])
def list_games(ledger: LedgerService = Depends(get_ledger_service)) -> list[Game]:
    return ledger.list_games()


@app.get("/api/games/{game_id}", response_model=Game, tags=["Tournaments"])
def get_game(game_id: int, ledger: LedgerService = Depends(get_ledger_service)) -> Game:
    return ledger.get_game(game_id)


@app.get("/api/tournaments", response_model=list[TournamentWithGame], tags=["Tournaments"])
def list_tournaments(
    game_id: Optional[int] = None, ledger: LedgerService = Depends(get_ledger_service)
) -> list[TournamentWithGame]:
    return ledger.list_tournaments(game_id)


@app.post("/api/tournaments/join", response_model=JoinTournamentResponse, tags=["Tournaments"])
def join_tournament(
    request: JoinTournamentRequest, ledger: LedgerService = Depends(get_ledger_service)
) -> JoinTournamentResponse:
    return ledger.join_tournament(request.tournament_id, request.user_id)


# Support

@app.post("/api/help", response_model=HelpRequest, tags=["Support"])
def create_help_request(
    request: CreateHelpRequest, ledger: LedgerService = Depends(get_ledger_service)
) -> HelpRequest:
    return ledger.create_help_request(request)


@app.get("/api/messages", response_model=list[AdminMessage], tags=["Support"])
def list_messages(ledger: LedgerService = Depends(get_ledger_service)) -> list[AdminMessage]:
    return ledger.list_active_messages()


# Admin

admin_router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@admin_router.get("/users", response_model=list[UserProfile])
def admin_list_users(ledger: LedgerService = Depends(get_ledger_service)) -> list[UserProfile]:
    return ledger.list_users()


@admin_router.get("/tournaments", response_model=list[TournamentWithGame])
def admin_list_tournaments(ledger: LedgerService = Depends(get_ledger_service)) -> list[TournamentWithGame]:
    return ledger.list_tournaments()


@admin_router.post("/tournaments", response_model=Tournament, status_code=status.HTTP_201_CREATED)
def admin_create_tournament(
    request: CreateTournamentRequest, ledger: LedgerService = Depends(get_ledger_service)
) -> Tournament:
    return ledger.create_tournament(request)


@admin_router.get("/tournaments/{tournament_id}/entries", response_model=list[TournamentEntry])
def admin_tournament_entries(
    tournament_id: int, ledger: LedgerService = Depends(get_ledger_service)
) -> list[TournamentEntry]:
    ledger.get_tournament(tournament_id)
    return ledger.get_tournament_entries(tournament_id)


@admin_router.post("/games", response_model=Game, status_code=status.HTTP_201_CREATED)
def admin_create_game(request: CreateGameRequest, ledger: LedgerService = Depends(get_ledger_service)) -> Game:
    return ledger.create_game(request)


@admin_router.get("/help-requests", response_model=list[HelpRequest])
def admin_list_help_requests(ledger: LedgerService = Depends(get_ledger_service)) -> list[HelpRequest]:
    return ledger.list_help_requests()


@admin_router.put("/help-requests/{request_id}", response_model=HelpRequest)
def admin_update_help_request(
    request_id: int, request: UpdateHelpRequest, ledger: LedgerService = Depends(get_ledger_service)
) -> HelpRequest:
    return ledger.update_help_request(request_id, request)


@admin_router.get("/transactions", response_model=list[Transaction])
def admin_list_transactions(ledger: LedgerService = Depends(get_ledger_service)) -> list[Transaction]:
    return ledger.get_all_transactions()


@admin_router.get("/payments/{order_id}")
def admin_order_payments(order_id: str, gateway: CashfreeClient = Depends(get_payment_gateway)):
    return {"order_id": order_id, "payments": gateway.get_order_payments(order_id)}


@admin_router.get("/messages", response_model=list[AdminMessage])
def admin_list_messages(ledger: LedgerService = Depends(get_ledger_service)) -> list[AdminMessage]:
    return ledger.list_active_messages()


@admin_router.post("/messages", response_model=AdminMessage, status_code=status.HTTP_201_CREATED)
def admin_create_message(
    request: CreateAdminMessageRequest, ledger: LedgerService = Depends(get_ledger_service)
) -> AdminMessage:
    return ledger.create_admin_message(request)


app.include_router(admin_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
