"""Deposit submission, history and the confirmation webhook."""

import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Optional

import pydantic
from fastapi import APIRouter, Depends, File, Form, Header, Query, Request, UploadFile

from starbit.api.auth import Principal, get_current_principal
from starbit.config import get_settings
from starbit.contracts import DepositOut, Page, PaymentMethodOut, ok
from starbit.contracts.deposits import DepositWebhookPayload
from starbit.errors import AuthenticationError, AuthorizationError, ValidationError
from starbit.ledger.database import get_db
from starbit.ledger.models import ProofType
from starbit.ledger.repository import LedgerRepository
from starbit.services.deposits import DepositPipeline, file_proof_reference

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_PROOF_BYTES = 10 * 1024 * 1024


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify an HMAC-SHA256 hex signature (``sha256=`` prefix allowed)."""
    if not secret:
        return True
    if not signature:
        return False
    if "=" in signature:
        signature = signature.split("=", 1)[1]
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.lower())


@router.get("/deposits/methods")
async def list_methods():
    """Active deposit methods with their current limits."""
    async with get_db() as session:
        repo = LedgerRepository(session)
        rows = await repo.list_payment_methods(active_only=True)
        return ok([PaymentMethodOut.from_row(method, crypto) for method, crypto in rows])


@router.post("/deposits")
async def submit_deposit(
    crypto_payment_method_id: int = Form(...),
    amount: Decimal = Form(...),
    proof_type: ProofType = Form(...),
    proof_of_payment: Optional[str] = Form(None),
    proof_file: Optional[UploadFile] = File(None),
    principal: Principal = Depends(get_current_principal),
):
    """Submit a deposit claim backed by a transaction hash or a proof file."""
    file_reference = None
    if proof_file is not None and proof_file.filename:
        content = await proof_file.read()
        if len(content) > MAX_PROOF_BYTES:
            raise ValidationError("Proof file is larger than 10 MB")
        file_reference = file_proof_reference(proof_file.filename, content)

    async with get_db() as session:
        pipeline = DepositPipeline(session)
        deposit = await pipeline.submit(
            principal.user_id,
            crypto_payment_method_id,
            amount,
            proof_type,
            tx_hash=proof_of_payment,
            proof_file=file_reference,
        )
        return ok(DepositOut.model_validate(deposit))


@router.get("/deposits")
async def deposit_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
):
    async with get_db() as session:
        repo = LedgerRepository(session)
        items, total = await repo.list_deposits(
            user_id=principal.user_id, limit=limit, offset=offset
        )
        return ok(
            Page(
                items=[DepositOut.model_validate(d) for d in items],
                total=total,
                limit=limit,
                offset=offset,
            )
        )


@router.get("/deposits/{deposit_id}")
async def get_deposit(deposit_id: int, principal: Principal = Depends(get_current_principal)):
    async with get_db() as session:
        deposit = await DepositPipeline(session).get(deposit_id)
        if deposit.user_id != principal.user_id and not principal.is_admin:
            raise AuthorizationError("Not your deposit")
        return ok(DepositOut.model_validate(deposit))


@router.post("/deposits/webhook")
async def deposit_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
):
    """Confirmation signal from the on-chain monitor.

    Signed with ``DEPOSIT_WEBHOOK_SECRET`` when one is configured.
    """
    settings = get_settings()
    body = await request.body()
    if not verify_webhook_signature(body, x_webhook_signature, settings.deposit_webhook_secret):
        logger.warning("Deposit webhook rejected: bad signature")
        raise AuthenticationError("Invalid webhook signature")

    try:
        payload = DepositWebhookPayload.model_validate_json(body)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid webhook payload: {e.errors()[0]['msg']}") from None

    async with get_db() as session:
        deposit = await DepositPipeline(session).advance(
            payload.deposit_id, payload.confirmations, payload.received_amount
        )
        return ok(DepositOut.model_validate(deposit))
