"""
Tests for the delivery lifecycle state machine
"""
import pytest
from decimal import Decimal
from unittest.mock import patch

from courier_hub.core.exceptions import (
    CandidateNotFound,
    ConsistencyViolation,
    CourierUnavailable,
    ForbiddenException,
    IllegalTransition,
    QueueContention,
    ValidationException,
    STALE_STATE_MESSAGE,
)
from courier_hub.db.models.actor_profile import ActorRole
from courier_hub.db.models.delivery import DeliveryStatus
from courier_hub.db.models.ledger_entry import LedgerEntryKind
from courier_hub.db.store import DeliveryStore
from courier_hub.domain.candidates import PersistedCandidate, QueuedCandidate
from courier_hub.domain.intake_payload import slot_identity
from courier_hub.domain.services.assignment_service import AssignmentService
from courier_hub.domain.services.notification_service import NotificationDispatcher
from courier_hub.domain.services.realtime_service import ACTORS_TABLE, DELIVERIES_TABLE, ESTABLISHMENTS_TABLE

from tests.conftest import FailingPushTransport


def queued(establishment, slot_index=0, slot_id="slot-drogasil-1") -> QueuedCandidate:
    return QueuedCandidate(establishment_id=establishment.id, slot_index=slot_index, slot_id=slot_id)


async def _reload_actor(db_session, actor_id):
    return await DeliveryStore(db_session).get_actor(actor_id, refresh=True)


class TestAssign:

    @pytest.mark.unit
    async def test_queued_candidate_assigned_with_courier_split(
        self, assignment_service, db_session, drogasil, courier_x, dispatcher
    ):
        """Drogasil request of 20.00 assigned to a 20% courier"""
        delivery = await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)

        assert delivery.status == DeliveryStatus.ASSIGNED
        assert delivery.courier_id == courier_x.id
        assert delivery.total_value == Decimal("20.00")
        assert delivery.courier_payout == Decimal("16.00")
        assert delivery.operator_profit == Decimal("4.00")
        assert delivery.customer_name == "Ana Lima"
        assert delivery.destination_address == ["Rua Augusta", "500", "Consolação", "São Paulo"]
        assert delivery.collection_address == "Av. Paulista, 1000"

        establishment = await DeliveryStore(db_session).get_establishment(drogasil.id, refresh=True)
        assert establishment.request_queue == []

    @pytest.mark.unit
    async def test_persisted_candidate_assigned(
        self, assignment_service, drogasil, delivery_factory, courier_x, dispatcher
    ):
        pending = await delivery_factory(drogasil.id, status=DeliveryStatus.AWAITING_POOL)

        delivery = await assignment_service.assign(
            PersistedCandidate(pending.id), courier_x.id, dispatcher.id
        )

        assert delivery.id == pending.id
        assert delivery.status == DeliveryStatus.ASSIGNED
        assert delivery.version == 2
        assert delivery.courier_payout == Decimal("16.00")

    @pytest.mark.unit
    async def test_commission_of_assigned_courier_is_used(
        self, assignment_service, drogasil, actor_factory, dispatcher
    ):
        courier = await actor_factory(
            name="Courier Z", commission_percent=Decimal("10"), commission_fixed=Decimal("1.00")
        )

        delivery = await assignment_service.assign(queued(drogasil), courier.id, dispatcher.id)

        assert delivery.operator_profit == Decimal("3.00")
        assert delivery.courier_payout == Decimal("17.00")

    @pytest.mark.unit
    async def test_self_fulfilment(self, assignment_service, drogasil, dispatcher):
        delivery = await assignment_service.assign(queued(drogasil), None, dispatcher.id)

        assert delivery.courier_id == dispatcher.id
        assert delivery.operator_fulfilled is True
        assert delivery.courier_payout == Decimal("0.00")
        assert delivery.operator_profit == Decimal("20.00")

    @pytest.mark.unit
    async def test_unavailable_courier_rejected(
        self, assignment_service, db_session, drogasil, actor_factory, dispatcher
    ):
        resting = await actor_factory(name="Resting", available=False)

        with pytest.raises(CourierUnavailable):
            await assignment_service.assign(queued(drogasil), resting.id, dispatcher.id)

        # nothing written
        establishment = await DeliveryStore(db_session).get_establishment(drogasil.id, refresh=True)
        assert len(establishment.request_queue) == 1

    @pytest.mark.unit
    async def test_dispatcher_profile_is_not_a_courier(self, assignment_service, drogasil, actor_factory, dispatcher):
        other_dispatcher = await actor_factory(name="Other", role=ActorRole.DISPATCHER, available=True)

        with pytest.raises(CourierUnavailable):
            await assignment_service.assign(queued(drogasil), other_dispatcher.id, dispatcher.id)

    @pytest.mark.unit
    async def test_only_dispatchers_assign(self, assignment_service, drogasil, courier_x, courier_y):
        with pytest.raises(ForbiddenException):
            await assignment_service.assign(queued(drogasil), courier_x.id, courier_y.id)

    @pytest.mark.unit
    async def test_second_assign_of_same_candidate_loses(
        self, assignment_service, drogasil, delivery_factory, courier_x, courier_y, dispatcher
    ):
        pending = await delivery_factory(drogasil.id, status=DeliveryStatus.AWAITING_POOL)
        candidate = PersistedCandidate(pending.id)

        await assignment_service.assign(candidate, courier_x.id, dispatcher.id)

        with pytest.raises(CandidateNotFound) as exc_info:
            await assignment_service.assign(candidate, courier_y.id, dispatcher.id)
        assert exc_info.value.message == STALE_STATE_MESSAGE

    @pytest.mark.unit
    async def test_claimed_queue_slot_is_gone(self, assignment_service, drogasil, courier_x, courier_y, dispatcher):
        candidate = queued(drogasil)
        await assignment_service.assign(candidate, courier_x.id, dispatcher.id)

        with pytest.raises(CandidateNotFound):
            await assignment_service.assign(candidate, courier_y.id, dispatcher.id)

    @pytest.mark.unit
    async def test_shifted_queue_slot_found_by_identity(
        self, assignment_service, establishment_factory, courier_x, courier_y, dispatcher
    ):
        establishment = await establishment_factory(
            name="Padaria",
            request_queue=[
                {"_slot_id": "first", "nome": "A", "valor": "10"},
                {"_slot_id": "second", "nome": "B", "valor": "12"},
            ],
        )
        stale_second = QueuedCandidate(establishment.id, 1, "second")

        await assignment_service.assign(QueuedCandidate(establishment.id, 0, "first"), courier_x.id, dispatcher.id)
        delivery = await assignment_service.assign(stale_second, courier_y.id, dispatcher.id)

        assert delivery.customer_name == "B"
        assert delivery.total_value == Decimal("12.00")

    @pytest.mark.unit
    async def test_garbage_entries_in_queue_are_skipped(
        self, assignment_service, establishment_factory, courier_x, courier_y, dispatcher
    ):
        establishment = await establishment_factory(
            name="Farmacia",
            request_queue=[
                {"_slot_id": "a", "nome": "A", "valor": "10"},
                "garbage text",
                {"_slot_id": "b", "nome": "B", "valor": "12"},
            ],
        )

        await assignment_service.assign(QueuedCandidate(establishment.id, 0, "a"), courier_x.id, dispatcher.id)
        # "b" shifted from index 2; the lookup walks past the garbage entry
        delivery = await assignment_service.assign(QueuedCandidate(establishment.id, 2, "b"), courier_y.id, dispatcher.id)

        assert delivery.customer_name == "B"
        fresh = await DeliveryStore(assignment_service.db).get_establishment(establishment.id, refresh=True)
        assert fresh.request_queue == ["garbage text"]

    @pytest.mark.unit
    async def test_garbage_entry_at_candidate_index_is_not_the_slot(
        self, assignment_service, establishment_factory, courier_x, dispatcher
    ):
        establishment = await establishment_factory(name="Farmacia", request_queue=["garbage text"])

        with pytest.raises(CandidateNotFound):
            await assignment_service.assign(QueuedCandidate(establishment.id, 0, "a"), courier_x.id, dispatcher.id)

    @pytest.mark.unit
    async def test_identical_unstamped_slots_in_one_queue(
        self, assignment_service, establishment_factory, courier_x, courier_y, dispatcher
    ):
        legacy = {"nome": "Joana", "valor": "15"}
        establishment = await establishment_factory(name="Padaria", request_queue=[dict(legacy), dict(legacy)])
        slot_id = slot_identity(legacy)

        first = await assignment_service.assign(QueuedCandidate(establishment.id, 0, slot_id), courier_x.id, dispatcher.id)
        second = await assignment_service.assign(QueuedCandidate(establishment.id, 1, slot_id), courier_y.id, dispatcher.id)

        assert first.id != second.id
        assert first.intake_slot_id != second.intake_slot_id
        assert first.intake_slot_id.startswith("legacy-")
        fresh = await DeliveryStore(assignment_service.db).get_establishment(establishment.id, refresh=True)
        assert fresh.request_queue == []

    @pytest.mark.unit
    async def test_identical_unstamped_slots_across_establishments(
        self, assignment_service, establishment_factory, courier_x, courier_y, dispatcher
    ):
        legacy = {"nome": "Joana", "valor": "15"}
        padaria = await establishment_factory(name="Padaria", request_queue=[dict(legacy)])
        mercado = await establishment_factory(name="Mercado", request_queue=[dict(legacy)])
        slot_id = slot_identity(legacy)

        first = await assignment_service.assign(QueuedCandidate(padaria.id, 0, slot_id), courier_x.id, dispatcher.id)
        second = await assignment_service.assign(QueuedCandidate(mercado.id, 0, slot_id), courier_y.id, dispatcher.id)

        assert first.establishment_id == padaria.id
        assert second.establishment_id == mercado.id
        assert first.intake_slot_id != second.intake_slot_id

    @pytest.mark.unit
    async def test_queue_change_during_promotion_is_retried(
        self, assignment_service, db_session, drogasil, courier_x, dispatcher
    ):
        """An intake append lands between the queue read and the queue write"""
        store = assignment_service.store
        original_replace = store.replace_queue
        late_slot = {"_slot_id": "late", "nome": "Late", "valor": "9"}
        expected_versions = []

        async def replace_after_intake(establishment_id, expected_version, new_queue):
            expected_versions.append(expected_version)
            if len(expected_versions) == 1:
                current = await store.get_establishment(establishment_id, refresh=True)
                await original_replace(
                    establishment_id, current.queue_version, [late_slot] + list(current.request_queue)
                )
                return False
            return await original_replace(establishment_id, expected_version, new_queue)

        with patch.object(store, "replace_queue", replace_after_intake):
            delivery = await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)

        assert delivery.customer_name == "Ana Lima"
        assert expected_versions == [0, 1]
        fresh = await DeliveryStore(db_session).get_establishment(drogasil.id, refresh=True)
        assert fresh.request_queue == [late_slot]

    @pytest.mark.unit
    async def test_queue_that_never_settles_is_contention(
        self, assignment_service, db_session, drogasil, courier_x, dispatcher
    ):
        store = assignment_service.store
        original_replace = store.replace_queue

        async def always_moved(establishment_id, expected_version, new_queue):
            current = await store.get_establishment(establishment_id, refresh=True)
            await original_replace(establishment_id, current.queue_version, list(current.request_queue))
            return False

        with patch.object(store, "replace_queue", always_moved):
            with pytest.raises(QueueContention):
                await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)

        fresh = await DeliveryStore(db_session).get_establishment(drogasil.id, refresh=True)
        assert len(fresh.request_queue) == 1

    @pytest.mark.unit
    async def test_negative_split_blocks_the_write(
        self, assignment_service, db_session, drogasil, actor_factory, dispatcher
    ):
        greedy = await actor_factory(name="Greedy", commission_percent=Decimal("0"), commission_fixed=Decimal("25"))

        with pytest.raises(ConsistencyViolation):
            await assignment_service.assign(queued(drogasil), greedy.id, dispatcher.id)

        establishment = await DeliveryStore(db_session).get_establishment(drogasil.id, refresh=True)
        assert len(establishment.request_queue) == 1

    @pytest.mark.unit
    async def test_emits_events_and_notifies_courier(
        self, assignment_service, realtime, push_transport, drogasil, courier_x, dispatcher
    ):
        delivery = await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)

        [change] = realtime.for_table(DELIVERIES_TABLE)
        assert change.row_id == delivery.id
        assert change.version == delivery.version
        assert change.row["status"] == "assigned"
        assert realtime.for_table(ESTABLISHMENTS_TABLE)[0].row["queue_length"] == 0

        [notification] = push_transport.sent
        assert notification["recipient_ids"] == [courier_x.id]
        assert "R$ 16,00" in notification["body"]

    @pytest.mark.unit
    async def test_transport_failure_does_not_undo_assignment(
        self, db_session, realtime, drogasil, courier_x, dispatcher
    ):
        service = AssignmentService(
            db_session,
            realtime=realtime,
            notifications=NotificationDispatcher(db_session, transport=FailingPushTransport()),
        )

        delivery = await service.assign(queued(drogasil), courier_x.id, dispatcher.id)

        fresh = await DeliveryStore(db_session).get_delivery(delivery.id, refresh=True)
        assert fresh.status == DeliveryStatus.ASSIGNED


class TestCourierFlow:

    @pytest.fixture
    async def assigned(self, assignment_service, drogasil, courier_x, dispatcher):
        return await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)

    @pytest.mark.unit
    async def test_accept_makes_courier_unavailable(self, assignment_service, db_session, assigned, courier_x):
        delivery = await assignment_service.accept(assigned.id, courier_x.id)

        assert delivery.status == DeliveryStatus.EN_ROUTE
        assert delivery.accepted_at is not None
        assert (await _reload_actor(db_session, courier_x.id)).available is False

    @pytest.mark.unit
    async def test_accept_twice_is_a_no_op(self, assignment_service, assigned, courier_x):
        first = await assignment_service.accept(assigned.id, courier_x.id)
        second = await assignment_service.accept(assigned.id, courier_x.id)

        assert second.status == DeliveryStatus.EN_ROUTE
        assert second.version == first.version

    @pytest.mark.unit
    async def test_accept_by_other_courier(self, assignment_service, assigned, courier_y):
        with pytest.raises(IllegalTransition):
            await assignment_service.accept(assigned.id, courier_y.id)

    @pytest.mark.unit
    async def test_collect_requires_en_route(self, assignment_service, assigned, courier_x):
        with pytest.raises(IllegalTransition) as exc_info:
            await assignment_service.confirm_collection(assigned.id, courier_x.id)
        assert exc_info.value.current_status == "assigned"

    @pytest.mark.unit
    async def test_complete_requires_collected(self, assignment_service, assigned, courier_x):
        await assignment_service.accept(assigned.id, courier_x.id)

        with pytest.raises(IllegalTransition):
            await assignment_service.confirm_completion(assigned.id, courier_x.id)

    @pytest.mark.unit
    async def test_full_flow_restores_availability(self, assignment_service, db_session, assigned, courier_x):
        await assignment_service.accept(assigned.id, courier_x.id)
        await assignment_service.confirm_collection(assigned.id, courier_x.id)
        delivery = await assignment_service.confirm_completion(assigned.id, courier_x.id)

        assert delivery.status == DeliveryStatus.COMPLETED
        assert delivery.completed_at is not None
        assert (await _reload_actor(db_session, courier_x.id)).available is True

    @pytest.fixture
    async def busy_courier(self, db_session, drogasil, delivery_factory, courier_x):
        """Courier X carrying two collected deliveries at once"""
        deliveries = [
            await delivery_factory(
                drogasil.id, status=DeliveryStatus.COLLECTED, courier_id=courier_x.id,
                courier_payout=Decimal("16.00"), operator_profit=Decimal("4.00"),
            )
            for _ in range(2)
        ]
        await DeliveryStore(db_session).set_actor_availability(courier_x.id, None, False)
        await db_session.commit()
        return deliveries

    @pytest.mark.unit
    async def test_courier_stays_unavailable_while_another_delivery_is_active(
        self, assignment_service, db_session, realtime, busy_courier, courier_x
    ):
        first, second = busy_courier

        await assignment_service.confirm_completion(first.id, courier_x.id)

        assert (await _reload_actor(db_session, courier_x.id)).available is False
        assert realtime.for_table(ACTORS_TABLE) == []

        await assignment_service.confirm_completion(second.id, courier_x.id)

        assert (await _reload_actor(db_session, courier_x.id)).available is True
        assert realtime.for_table(ACTORS_TABLE)[-1].row["available"] is True

    @pytest.mark.unit
    async def test_en_route_reject_keeps_busy_courier_unavailable(
        self, assignment_service, db_session, drogasil, delivery_factory, busy_courier, courier_x, dispatcher
    ):
        en_route = await delivery_factory(
            drogasil.id, status=DeliveryStatus.EN_ROUTE, courier_id=courier_x.id,
            courier_payout=Decimal("16.00"), operator_profit=Decimal("4.00"),
        )

        await assignment_service.reject(en_route.id, dispatcher.id)

        assert (await _reload_actor(db_session, courier_x.id)).available is False

    @pytest.mark.unit
    async def test_completed_is_terminal(self, assignment_service, assigned, courier_x, dispatcher):
        await assignment_service.accept(assigned.id, courier_x.id)
        await assignment_service.confirm_collection(assigned.id, courier_x.id)
        await assignment_service.confirm_completion(assigned.id, courier_x.id)

        for operation in (
            lambda: assignment_service.accept(assigned.id, courier_x.id),
            lambda: assignment_service.confirm_collection(assigned.id, courier_x.id),
            lambda: assignment_service.confirm_completion(assigned.id, courier_x.id),
            lambda: assignment_service.reject(assigned.id, dispatcher.id),
        ):
            with pytest.raises(IllegalTransition):
                await operation()

    @pytest.mark.unit
    async def test_completion_with_broken_split_is_blocked(
        self, assignment_service, db_session, drogasil, delivery_factory, courier_x
    ):
        delivery = await delivery_factory(
            drogasil.id, status=DeliveryStatus.COLLECTED, courier_id=courier_x.id,
            courier_payout=Decimal("16.00"), operator_profit=Decimal("1.00"),
        )

        with pytest.raises(ConsistencyViolation):
            await assignment_service.confirm_completion(delivery.id, courier_x.id)

        fresh = await DeliveryStore(db_session).get_delivery(delivery.id, refresh=True)
        assert fresh.status == DeliveryStatus.COLLECTED


class TestReject:

    @pytest.mark.unit
    async def test_courier_rejects_assigned_delivery(
        self, assignment_service, intake_service, push_transport, drogasil, courier_x, dispatcher
    ):
        delivery = await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)

        rejected = await assignment_service.reject(delivery.id, courier_x.id)

        assert rejected.status == DeliveryStatus.AWAITING_POOL
        assert rejected.courier_id is None
        assert rejected.courier_payout is None
        assert rejected.operator_profit is None
        assert rejected.total_value == Decimal("20.00")

        groups = await intake_service.list_candidates()
        references = [view.candidate for group in groups for view in group.candidates]
        assert references == [PersistedCandidate(delivery.id)]

        assert push_transport.sent[-1]["recipient_ids"] == [dispatcher.id]

    @pytest.mark.unit
    async def test_other_courier_cannot_reject(self, assignment_service, drogasil, courier_x, courier_y, dispatcher):
        delivery = await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)

        with pytest.raises(IllegalTransition):
            await assignment_service.reject(delivery.id, courier_y.id)

    @pytest.mark.unit
    async def test_en_route_reject_is_dispatcher_only(
        self, assignment_service, db_session, drogasil, courier_x, dispatcher
    ):
        delivery = await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)
        await assignment_service.accept(delivery.id, courier_x.id)

        with pytest.raises(IllegalTransition):
            await assignment_service.reject(delivery.id, courier_x.id)

        rejected = await assignment_service.reject(delivery.id, dispatcher.id)

        assert rejected.status == DeliveryStatus.AWAITING_POOL
        assert (await _reload_actor(db_session, courier_x.id)).available is True

    @pytest.mark.unit
    async def test_collected_cannot_be_rejected(self, assignment_service, drogasil, courier_x, dispatcher):
        delivery = await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)
        await assignment_service.accept(delivery.id, courier_x.id)
        await assignment_service.confirm_collection(delivery.id, courier_x.id)

        with pytest.raises(IllegalTransition):
            await assignment_service.reject(delivery.id, dispatcher.id)


class TestScenarios:

    @pytest.mark.integration
    async def test_reject_reassign_complete_and_settle(
        self, assignment_service, intake_service, ledger_service, db_session,
        drogasil, courier_x, courier_y, dispatcher,
    ):
        # A: queued 20.00 -> X (20%)
        groups = await intake_service.list_candidates()
        [view] = groups[0].candidates
        delivery = await intake_service.assign(view.candidate, courier_x.id, dispatcher.id)
        assert (delivery.total_value, delivery.courier_payout, delivery.operator_profit) == (
            Decimal("20.00"), Decimal("16.00"), Decimal("4.00")
        )

        # B: X rejects, delivery reappears once, Y takes it
        await assignment_service.reject(delivery.id, courier_x.id)
        groups = await intake_service.list_candidates()
        [view] = [v for g in groups for v in g.candidates]
        assert view.candidate == PersistedCandidate(delivery.id)
        delivery = await intake_service.assign(view.candidate, courier_y.id, dispatcher.id)
        assert delivery.courier_id == courier_y.id

        # C: Y accepts, collects, completes
        await assignment_service.accept(delivery.id, courier_y.id)
        await assignment_service.confirm_collection(delivery.id, courier_y.id)
        await assignment_service.confirm_completion(delivery.id, courier_y.id)

        assert (await _reload_actor(db_session, courier_y.id)).available is True
        assert await ledger_service.courier_payable(courier_y.id) == Decimal("16.00")
        assert await ledger_service.courier_payable(courier_x.id) == Decimal("0.00")
        assert await ledger_service.establishment_receivable(drogasil.id) == Decimal("20.00")

        await ledger_service.record_transaction(
            LedgerEntryKind.RECEIPT_FROM_ESTABLISHMENT, drogasil.id, Decimal("20.00"),
            recorded_by_id=dispatcher.id,
        )
        assert await ledger_service.establishment_receivable(drogasil.id) == Decimal("0.00")


class TestAvailabilityAndPosition:

    @pytest.mark.unit
    async def test_toggle_while_idle(self, assignment_service, courier_x):
        courier = await assignment_service.set_availability(courier_x.id, False)
        assert courier.available is False

        courier = await assignment_service.set_availability(courier_x.id, True)
        assert courier.available is True

    @pytest.mark.unit
    async def test_toggle_refused_with_active_delivery(self, assignment_service, drogasil, courier_x, dispatcher):
        delivery = await assignment_service.assign(queued(drogasil), courier_x.id, dispatcher.id)
        await assignment_service.accept(delivery.id, courier_x.id)

        with pytest.raises(IllegalTransition):
            await assignment_service.set_availability(courier_x.id, True)

    @pytest.mark.unit
    async def test_dispatcher_has_no_toggle(self, assignment_service, dispatcher):
        with pytest.raises(ForbiddenException):
            await assignment_service.set_availability(dispatcher.id, True)

    @pytest.mark.unit
    async def test_update_position(self, assignment_service, realtime, courier_x):
        actor = await assignment_service.update_position(courier_x.id, -23.5505, -46.6333)

        assert actor.latitude == -23.5505
        assert realtime.changes[-1].table == "actor_profiles"
        assert realtime.changes[-1].version is None

    @pytest.mark.unit
    async def test_position_out_of_range(self, assignment_service, courier_x):
        with pytest.raises(ValidationException):
            await assignment_service.update_position(courier_x.id, 91.0, 0.0)


class TestListings:

    @pytest.mark.unit
    async def test_courier_dashboard(
        self, assignment_service, establishment_factory, courier_x, dispatcher
    ):
        establishment = await establishment_factory(
            name="Mercado",
            request_queue=[
                {"_slot_id": "a", "valor": "20"},
                {"_slot_id": "b", "valor": "10"},
            ],
        )
        done = await assignment_service.assign(QueuedCandidate(establishment.id, 0, "a"), courier_x.id, dispatcher.id)
        await assignment_service.accept(done.id, courier_x.id)
        await assignment_service.confirm_collection(done.id, courier_x.id)
        await assignment_service.confirm_completion(done.id, courier_x.id)
        waiting = await assignment_service.assign(QueuedCandidate(establishment.id, 0, "b"), courier_x.id, dispatcher.id)

        dashboard = await assignment_service.list_courier_deliveries(courier_x.id)

        assert [d.id for d in dashboard.assigned] == [waiting.id]
        assert dashboard.active == []
        assert [d.id for d in dashboard.history] == [done.id]
        assert dashboard.today_earnings == Decimal("16.00")

    @pytest.mark.unit
    async def test_activity_feed_filters(self, assignment_service, drogasil, delivery_factory, courier_x):
        await delivery_factory(drogasil.id, customer_name="Maria")
        await delivery_factory(drogasil.id, customer_name="Pedro", status=DeliveryStatus.ASSIGNED, courier_id=courier_x.id)

        assert len(await assignment_service.list_deliveries()) == 2
        assert len(await assignment_service.list_deliveries(status=DeliveryStatus.ASSIGNED)) == 1
        assert len(await assignment_service.list_deliveries(search="  mari ")) == 1

    @pytest.mark.unit
    async def test_available_couriers(self, assignment_service, courier_x, actor_factory, dispatcher):
        await actor_factory(name="Resting", available=False)

        couriers = await assignment_service.list_available_couriers()

        assert [c.id for c in couriers] == [courier_x.id]
