"""
Tests for the money split and the derived balances
"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from courier_hub.core.exceptions import (
    ActorNotFoundError,
    ConsistencyViolation,
    NotFoundException,
    ValidationException,
)
from courier_hub.db.models.actor_profile import ActorRole
from courier_hub.db.models.delivery import DeliveryStatus
from courier_hub.db.models.ledger_entry import LedgerEntryKind
from courier_hub.db.store import DateRange
from courier_hub.domain.services.ledger_service import (
    compute_split,
    operator_split,
    verify_split,
)


class TestComputeSplit:

    @pytest.mark.unit
    def test_twenty_percent_of_twenty(self):
        split = compute_split(Decimal("20.00"), Decimal("20"), Decimal("0"))

        assert split.total == Decimal("20.00")
        assert split.payout == Decimal("16.00")
        assert split.profit == Decimal("4.00")
        assert split.operator_fulfilled is False

    @pytest.mark.unit
    def test_profit_rounds_half_up_and_payout_takes_remainder(self):
        # 10.05 * 15% = 1.5075 -> 1.51
        split = compute_split(Decimal("10.05"), Decimal("15"), Decimal("0"))

        assert split.profit == Decimal("1.51")
        assert split.payout == Decimal("8.54")
        assert split.payout + split.profit == split.total

    @pytest.mark.unit
    def test_fixed_fee_added_to_profit(self):
        split = compute_split(Decimal("20.00"), Decimal("10"), Decimal("1.50"))

        assert split.profit == Decimal("3.50")
        assert split.payout == Decimal("16.50")

    @pytest.mark.unit
    def test_fixed_fee_above_total_is_a_consistency_violation(self):
        with pytest.raises(ConsistencyViolation):
            compute_split(Decimal("5.00"), Decimal("0"), Decimal("6.00"))

    @pytest.mark.unit
    def test_zero_total(self):
        split = compute_split(Decimal("0"), Decimal("20"), Decimal("0"))

        assert split.payout == Decimal("0.00")
        assert split.profit == Decimal("0.00")

    @pytest.mark.unit
    def test_operator_split_keeps_everything(self):
        split = operator_split(Decimal("32.90"))

        assert split.payout == Decimal("0.00")
        assert split.profit == Decimal("32.90")
        assert split.operator_fulfilled is True
        assert split.as_fields()["operator_fulfilled"] is True

    @pytest.mark.unit
    def test_invalid_amount_rejected(self):
        with pytest.raises(ValidationException):
            compute_split("abc", Decimal("20"))


class TestVerifySplit:

    @pytest.mark.unit
    async def test_consistent_split_passes(self, drogasil, delivery_factory):
        delivery = await delivery_factory(
            drogasil.id,
            status=DeliveryStatus.ASSIGNED,
            courier_payout=Decimal("16.00"),
            operator_profit=Decimal("4.00"),
        )
        verify_split(delivery)

    @pytest.mark.unit
    async def test_mismatched_split_raises(self, drogasil, delivery_factory):
        delivery = await delivery_factory(
            drogasil.id,
            status=DeliveryStatus.ASSIGNED,
            courier_payout=Decimal("16.00"),
            operator_profit=Decimal("3.00"),
        )
        with pytest.raises(ConsistencyViolation):
            verify_split(delivery)

    @pytest.mark.unit
    async def test_unset_split_raises(self, drogasil, delivery_factory):
        delivery = await delivery_factory(drogasil.id)
        with pytest.raises(ConsistencyViolation):
            verify_split(delivery)


class TestRecordTransaction:

    @pytest.mark.unit
    async def test_receipt_recorded(self, ledger_service, drogasil, dispatcher):
        entry = await ledger_service.record_transaction(
            LedgerEntryKind.RECEIPT_FROM_ESTABLISHMENT,
            drogasil.id,
            Decimal("20.00"),
            recorded_by_id=dispatcher.id,
        )

        assert entry.id is not None
        assert entry.amount == Decimal("20.00")
        assert entry.method == "PIX"
        assert entry.recorded_by_id == dispatcher.id

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
    async def test_non_positive_amount_rejected(self, ledger_service, drogasil, amount):
        with pytest.raises(ValidationException):
            await ledger_service.record_transaction(
                LedgerEntryKind.RECEIPT_FROM_ESTABLISHMENT, drogasil.id, amount
            )

    @pytest.mark.unit
    async def test_unknown_establishment(self, ledger_service):
        with pytest.raises(NotFoundException):
            await ledger_service.record_transaction(
                LedgerEntryKind.RECEIPT_FROM_ESTABLISHMENT, 999, Decimal("10.00")
            )

    @pytest.mark.unit
    async def test_payment_must_target_a_courier(self, ledger_service, dispatcher):
        with pytest.raises(ActorNotFoundError):
            await ledger_service.record_transaction(
                LedgerEntryKind.PAYMENT_TO_COURIER, dispatcher.id, Decimal("10.00")
            )


class TestBalances:

    @pytest.fixture
    async def completed_history(self, drogasil, courier_x, dispatcher, delivery_factory):
        """Two courier deliveries and one self-fulfilled delivery"""
        now = datetime.utcnow()
        await delivery_factory(
            drogasil.id, status=DeliveryStatus.COMPLETED, courier_id=courier_x.id,
            courier_payout=Decimal("16.00"), operator_profit=Decimal("4.00"),
            completed_at=now - timedelta(days=1),
        )
        await delivery_factory(
            drogasil.id, status=DeliveryStatus.COMPLETED, total_value=Decimal("10.00"),
            courier_id=courier_x.id, courier_payout=Decimal("8.00"),
            operator_profit=Decimal("2.00"), completed_at=now,
        )
        await delivery_factory(
            drogasil.id, status=DeliveryStatus.COMPLETED, total_value=Decimal("15.00"),
            courier_id=dispatcher.id, courier_payout=Decimal("0.00"),
            operator_profit=Decimal("15.00"), operator_fulfilled=True, completed_at=now,
        )
        # not completed - never counted
        await delivery_factory(
            drogasil.id, status=DeliveryStatus.EN_ROUTE, courier_id=courier_x.id,
            courier_payout=Decimal("16.00"), operator_profit=Decimal("4.00"),
        )
        return now

    @pytest.mark.unit
    async def test_establishment_receivable(self, ledger_service, drogasil, completed_history):
        assert await ledger_service.establishment_receivable(drogasil.id) == Decimal("45.00")

        await ledger_service.record_transaction(
            LedgerEntryKind.RECEIPT_FROM_ESTABLISHMENT, drogasil.id, Decimal("30.00")
        )

        assert await ledger_service.establishment_receivable(drogasil.id) == Decimal("15.00")

    @pytest.mark.unit
    async def test_courier_payable_excludes_self_fulfilled(
        self, ledger_service, courier_x, completed_history
    ):
        assert await ledger_service.courier_payable(courier_x.id) == Decimal("24.00")

        await ledger_service.record_transaction(
            LedgerEntryKind.PAYMENT_TO_COURIER, courier_x.id, Decimal("24.00")
        )

        assert await ledger_service.courier_payable(courier_x.id) == Decimal("0.00")

    @pytest.mark.unit
    async def test_operator_profit_counts_self_fulfilled_totals(self, ledger_service, completed_history):
        assert await ledger_service.operator_profit() == Decimal("21.00")

    @pytest.mark.unit
    async def test_range_is_half_open(self, ledger_service, drogasil, completed_history):
        now = completed_history
        yesterday_only = DateRange(start=now - timedelta(days=2), end=now)

        assert await ledger_service.establishment_receivable(drogasil.id, yesterday_only) == Decimal("20.00")
        assert await ledger_service.operator_profit(DateRange(start=now)) == Decimal("17.00")

    @pytest.mark.unit
    async def test_operator_summary(self, ledger_service, completed_history):
        summary = await ledger_service.operator_summary()

        assert summary.deliveries == 3
        assert summary.gross_revenue == Decimal("45.00")
        assert summary.courier_cost == Decimal("24.00")
        assert summary.net_profit == Decimal("21.00")
        assert summary.gross_revenue == summary.courier_cost + summary.net_profit

    @pytest.mark.unit
    async def test_summaries_per_entity(
        self, ledger_service, drogasil, courier_x, courier_y, completed_history
    ):
        await ledger_service.record_transaction(
            LedgerEntryKind.PAYMENT_TO_COURIER, courier_x.id, Decimal("10.00")
        )

        establishments = await ledger_service.establishment_summaries()
        couriers = {c.courier_id: c for c in await ledger_service.courier_summaries()}

        assert [(e.name, e.billed, e.outstanding) for e in establishments] == [
            ("Drogasil", Decimal("45.00"), Decimal("45.00"))
        ]
        assert couriers[courier_x.id].deliveries == 2
        assert couriers[courier_x.id].earned == Decimal("24.00")
        assert couriers[courier_x.id].outstanding == Decimal("14.00")
        assert couriers[courier_y.id].earned == Decimal("0.00")

    @pytest.mark.unit
    async def test_balances_are_recomputed_not_stored(
        self, ledger_service, drogasil, delivery_factory, actor_factory
    ):
        courier = await actor_factory(name="Late Courier", role=ActorRole.COURIER)
        assert await ledger_service.courier_payable(courier.id) == Decimal("0.00")

        await delivery_factory(
            drogasil.id, status=DeliveryStatus.COMPLETED, courier_id=courier.id,
            courier_payout=Decimal("16.00"), operator_profit=Decimal("4.00"),
            completed_at=datetime.utcnow(),
        )

        assert await ledger_service.courier_payable(courier.id) == Decimal("16.00")
