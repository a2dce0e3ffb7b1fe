"""Tests for the withdrawal pipeline."""

from decimal import Decimal

import pytest
import pytest_asyncio

from starbit.errors import InsufficientBalance, InvalidStateError, NotFoundError, ValidationError
from starbit.ledger.models import AuditLogType, WithdrawalStatus
from starbit.services.withdrawals import WithdrawalPipeline, is_valid_wallet_address, quote_fee

ETH_ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"


@pytest.fixture
def pipeline(db_session, settings) -> WithdrawalPipeline:
    return WithdrawalPipeline(db_session, settings)


@pytest_asyncio.fixture
async def funded_alice(users, ledger_repo):
    alice, _, _ = users
    await ledger_repo.credit(alice.id, "USD", Decimal("500"))
    return alice


async def request_crypto(pipeline, user, amount="500"):
    return await pipeline.request(
        user.id, Decimal(amount), "crypto", wallet_address=ETH_ADDRESS, network="ethereum"
    )


class TestRequest:
    """Tests for withdrawal requests."""

    @pytest.mark.asyncio
    async def test_request_locks_gross_amount(self, pipeline, funded_alice, ledger_repo):
        """$500 requested against $500 available leaves nothing spendable."""
        withdrawal = await request_crypto(pipeline, funded_alice)

        assert withdrawal.status == WithdrawalStatus.PENDING
        assert withdrawal.reference == f"W-{withdrawal.id:06d}"
        balance = await ledger_repo.get_balance(funded_alice.id, "USD")
        assert balance.available == Decimal("0")
        assert balance.locked == Decimal("500")

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, pipeline, users):
        _, bob, _ = users

        with pytest.raises(InsufficientBalance):
            await request_crypto(pipeline, bob, amount="100")

    @pytest.mark.asyncio
    async def test_limits(self, pipeline, funded_alice):
        with pytest.raises(ValidationError):
            await request_crypto(pipeline, funded_alice, amount="10")
        with pytest.raises(ValidationError):
            await request_crypto(pipeline, funded_alice, amount="150000")

    @pytest.mark.asyncio
    async def test_destination_required(self, pipeline, funded_alice):
        """Crypto needs a wallet address; other methods need payout details."""
        with pytest.raises(ValidationError):
            await pipeline.request(funded_alice.id, Decimal("100"), "crypto")
        with pytest.raises(ValidationError):
            await pipeline.request(funded_alice.id, Decimal("100"), "bank_transfer")

        withdrawal = await pipeline.request(
            funded_alice.id, Decimal("100"), "bank_transfer", details="IBAN DE00 0000"
        )
        assert withdrawal.method == "bank_transfer"

    @pytest.mark.asyncio
    async def test_invalid_wallet_address_rejected(self, pipeline, funded_alice, ledger_repo):
        """A malformed address is refused before anything is locked."""
        with pytest.raises(ValidationError, match="Invalid wallet address"):
            await pipeline.request(
                funded_alice.id, Decimal("100"), "crypto", wallet_address="0xdestination"
            )

        balance = await ledger_repo.get_balance(funded_alice.id, "USD")
        assert balance.available == Decimal("500")
        assert balance.locked == Decimal("0")

    @pytest.mark.asyncio
    async def test_maximum_is_inclusive(self, db_session, settings, ledger_repo, users):
        _, bob, _ = users
        await ledger_repo.credit(bob.id, "USD", Decimal("100000"))
        pipeline = WithdrawalPipeline(db_session, settings)

        withdrawal = await request_crypto(pipeline, bob, amount="100000")

        assert withdrawal.amount == Decimal("100000")

    @pytest.mark.asyncio
    async def test_fee_recorded(self, db_session, settings, funded_alice):
        settings.withdrawal_fee_percent = Decimal("1.5")
        pipeline = WithdrawalPipeline(db_session, settings)

        withdrawal = await request_crypto(pipeline, funded_alice, amount="200")

        assert withdrawal.fee_amount == Decimal("3.00")
        assert withdrawal.net_amount == Decimal("197.00")


class TestAdminActions:
    """Tests for process and cancel."""

    @pytest.mark.asyncio
    async def test_cancel_refunds_in_full(self, pipeline, funded_alice, ledger_repo):
        withdrawal = await request_crypto(pipeline, funded_alice)

        withdrawal = await pipeline.cancel(withdrawal.id, "admin:root", reason="Sanctioned address")

        assert withdrawal.status == WithdrawalStatus.CANCELLED
        assert withdrawal.cancel_reason == "Sanctioned address"
        balance = await ledger_repo.get_balance(funded_alice.id, "USD")
        assert balance.available == Decimal("500")
        assert balance.locked == Decimal("0")

    @pytest.mark.asyncio
    async def test_process_debits_gross(self, pipeline, funded_alice, ledger_repo):
        withdrawal = await request_crypto(pipeline, funded_alice)

        withdrawal = await pipeline.process(withdrawal.id, "admin:root", tx_hash=" 0xpaid ")

        assert withdrawal.status == WithdrawalStatus.COMPLETED
        assert withdrawal.tx_hash == "0xpaid"
        assert withdrawal.processed_at is not None
        balance = await ledger_repo.get_balance(funded_alice.id, "USD")
        assert balance.available == Decimal("0")
        assert balance.locked == Decimal("0")

        logs = await ledger_repo.get_audit_logs_by_reference("withdrawal", withdrawal.id)
        assert [log.log_type for log in logs] == [AuditLogType.LOCK, AuditLogType.SETTLE]
        assert logs[1].amount == Decimal("500")

    @pytest.mark.asyncio
    async def test_terminal_withdrawal_rejected(self, pipeline, funded_alice):
        """A finished withdrawal can be neither processed nor cancelled again."""
        withdrawal = await request_crypto(pipeline, funded_alice)
        await pipeline.process(withdrawal.id, "admin:root")

        with pytest.raises(InvalidStateError):
            await pipeline.cancel(withdrawal.id, "admin:root")
        with pytest.raises(InvalidStateError):
            await pipeline.process(withdrawal.id, "admin:root")

    @pytest.mark.asyncio
    async def test_unknown_withdrawal(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.process(404, "admin:root")


class TestQuoteFee:
    """Tests for the fee preview."""

    def test_fee_rounds_half_up_to_cents(self, settings):
        settings.withdrawal_fee_percent = Decimal("1")

        quote = quote_fee(Decimal("100.50"), settings)

        assert quote["fee_amount"] == Decimal("1.01")
        assert quote["net_amount"] == Decimal("99.49")
        assert quote["asset"] == "USD"
        assert quote["processing_time"] == settings.withdrawal_processing_time

    def test_zero_fee(self, settings):
        quote = quote_fee(Decimal("250"), settings)

        assert quote["fee_amount"] == Decimal("0")
        assert quote["net_amount"] == Decimal("250")

    def test_non_positive_amount(self, settings):
        with pytest.raises(ValidationError):
            quote_fee(Decimal("0"), settings)


class TestWalletAddress:
    """Tests for crypto destination formats."""

    @pytest.mark.parametrize(
        "address",
        [
            ETH_ADDRESS,
            "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa",
            "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq",
            "TLa2f6VPqDgRE67v1736s7bJ8Ray5wYjU7",
            f"  {ETH_ADDRESS}  ",
        ],
    )
    def test_valid(self, address):
        assert is_valid_wallet_address(address)

    @pytest.mark.parametrize(
        "address",
        [
            None,
            "",
            "0xdest",
            ETH_ADDRESS[:-1],
            "0OIl1zP1eP5QGefi2DMPTfTL5SLmv7Div",
            "bc1short",
            "not-an-address",
        ],
    )
    def test_invalid(self, address):
        assert not is_valid_wallet_address(address)
