"""Tests for the persistent store."""

import pytest

from app.errors import Conflict, NotFound
from app.models.emergency import EmergencyRequestCreate, RequestStatus

STALE = "2000-01-01T00:00:00+00:00"


async def _new_request(store, world, **kwargs):
    body = EmergencyRequestCreate(latitude=22.72, longitude=75.86, **kwargs)
    return await store.create_request(world.patient.id, body)


# --- Proximity ---


class TestNearby:
    async def test_hospitals_within_radius(self, store, world):
        found = await store.nearby_hospitals(22.72, 75.86, 0.1)
        assert [h.id for h in found] == [world.hospital.id]

    async def test_hospitals_outside_radius(self, store, world):
        assert await store.nearby_hospitals(10.0, 10.0, 0.1) == []

    async def test_radius_is_planar_not_per_axis(self, store, world):
        # 0.08 on each axis is inside a 0.1 box but outside a 0.1 circle
        found = await store.nearby_hospitals(22.7196 + 0.08, 75.8577 + 0.08, 0.1)
        assert found == []

    async def test_ambulances_nearby(self, store, world):
        found = await store.nearby_ambulances(22.72, 75.86, 0.1)
        assert {a.id for a in found} == {world.ambulance_a.id, world.ambulance_b.id}

    async def test_ambulance_without_position_is_skipped(self, store, world):
        await store.create_ambulance("AMB-XXX")
        found = await store.nearby_ambulances(22.72, 75.86, 0.1)
        assert all(a.vehicle_number != "AMB-XXX" for a in found)


# --- Bed slots ---


class TestBeds:
    async def test_create_hospital_creates_slots(self, store, world):
        slots = await store.list_bed_slots(world.hospital.id)
        assert len(slots) == 6
        assert {s.bed_number for s in slots if s.bed_type == "icu"} == {"ICU-01", "ICU-02"}
        assert world.hospital.total_beds == 4
        assert world.hospital.available_beds == 4
        assert world.hospital.icu_beds == 2
        assert world.hospital.available_icu_beds == 2

    async def test_occupy_flips_in_place(self, store, world, db):
        before = await db.fetch_one("SELECT COUNT(*) AS n FROM bed_status_logs")
        slot = await store.occupy_bed(world.hospital.id, "G-02", "John Patient", None)
        after = await db.fetch_one("SELECT COUNT(*) AS n FROM bed_status_logs")

        assert before["n"] == after["n"]
        assert slot.status == "occupied"
        assert slot.patient_name == "John Patient"
        hospital = await store.get_hospital(world.hospital.id)
        assert hospital.available_beds == 3
        assert hospital.total_beds == 4

    async def test_occupy_taken_bed_conflicts(self, store, world):
        await store.occupy_bed(world.hospital.id, "G-01", "A", None)
        with pytest.raises(Conflict) as exc:
            await store.occupy_bed(world.hospital.id, "G-01", "B", None)
        assert exc.value.rule == "bed_unavailable"
        slot = await store.get_bed_slot(world.hospital.id, "G-01")
        assert slot.patient_name == "A"

    async def test_occupy_unknown_bed(self, store, world):
        with pytest.raises(NotFound):
            await store.occupy_bed(world.hospital.id, "G-99", "A", None)

    async def test_release_restores_count(self, store, world):
        await store.occupy_bed(world.hospital.id, "ICU-01", "A", None)
        assert (await store.get_hospital(world.hospital.id)).available_icu_beds == 1
        slot = await store.release_bed(world.hospital.id, "ICU-01")
        assert slot.status == "available"
        assert slot.patient_name is None
        assert (await store.get_hospital(world.hospital.id)).available_icu_beds == 2

    async def test_release_free_bed_conflicts(self, store, world):
        with pytest.raises(Conflict) as exc:
            await store.release_bed(world.hospital.id, "G-01")
        assert exc.value.rule == "bed_not_occupied"

    async def test_counters_follow_slot_rows(self, store, world, db):
        # Counters are recomputed from rows, not incremented
        await db.execute(
            "UPDATE hospitals SET available_beds = 0 WHERE id = ?", (world.hospital.id,)
        )
        await db.commit()
        hospital = await store.refresh_bed_counts(world.hospital.id)
        assert hospital.available_beds == 4


# --- Requests ---


class TestRequests:
    async def test_create_defaults(self, store, world):
        request = await _new_request(store, world, client_reference="tmp-1")
        assert request.status == RequestStatus.PENDING
        assert request.priority == "high"
        assert request.ambulance_id is None
        assert request.client_reference == "tmp-1"

    async def test_claim_request_once(self, store, world):
        request = await _new_request(store, world)
        assert await store.claim_request(request.id, world.ambulance_a.id) is True
        assert await store.claim_request(request.id, world.ambulance_b.id) is False
        stored = await store.get_request(request.id)
        assert stored.status == RequestStatus.ACCEPTED
        assert stored.ambulance_id == world.ambulance_a.id

    async def test_claim_ambulance_once(self, store, world):
        assert await store.claim_ambulance(world.ambulance_a.id) is True
        assert await store.claim_ambulance(world.ambulance_a.id) is False
        assert (await store.get_ambulance(world.ambulance_a.id)).status == "dispatched"

    async def test_transition_compare_and_set(self, store, world):
        request = await _new_request(store, world)
        await store.claim_request(request.id, world.ambulance_a.id)

        assert await store.transition_request(request.id, RequestStatus.PENDING, RequestStatus.DISPATCHED) is False
        assert await store.transition_request(
            request.id, RequestStatus.ACCEPTED, RequestStatus.DISPATCHED, hospital_id=world.hospital.id
        ) is True
        stored = await store.get_request(request.id)
        assert stored.status == RequestStatus.DISPATCHED
        assert stored.hospital_id == world.hospital.id

    async def test_transition_rejects_unknown_fields(self, store, world):
        request = await _new_request(store, world)
        with pytest.raises(ValueError):
            await store.transition_request(request.id, "pending", "cancelled", patient_id=99)

    async def test_writes_stamp_updated_at(self, store, world, db):
        request = await _new_request(store, world)
        await db.execute("UPDATE emergency_requests SET updated_at = ? WHERE id = ?", (STALE, request.id))
        await db.commit()

        await store.claim_request(request.id, world.ambulance_a.id)
        stored = await store.get_request(request.id)
        assert stored.updated_at > STALE

    async def test_location_update_stamps_updated_at(self, store, world, db):
        await db.execute("UPDATE ambulances SET updated_at = ? WHERE id = ?", (STALE, world.ambulance_a.id))
        await db.commit()
        ambulance = await store.update_ambulance_location(world.ambulance_a.id, 22.70, 75.80)
        assert (ambulance.current_latitude, ambulance.current_longitude) == (22.70, 75.80)
        assert ambulance.updated_at > STALE

    async def test_listings_hide_archived(self, store, world):
        request = await _new_request(store, world)
        assert await store.archive_request(request.id) is False  # still pending

        await store.transition_request(request.id, "pending", "cancelled")
        assert await store.archive_request(request.id) is True
        assert await store.list_requests_by_patient(world.patient.id) == []
        assert (await store.get_request(request.id)).archived is True

    async def test_active_requests(self, store, world):
        open_request = await _new_request(store, world)
        closed = await _new_request(store, world)
        await store.transition_request(closed.id, "pending", "cancelled")

        active = await store.list_active_requests()
        assert [r.id for r in active] == [open_request.id]

    async def test_active_request_for_ambulance(self, store, world):
        request = await _new_request(store, world)
        assert await store.get_active_request_for_ambulance(world.ambulance_a.id) is None
        await store.claim_request(request.id, world.ambulance_a.id)
        active = await store.get_active_request_for_ambulance(world.ambulance_a.id)
        assert active.id == request.id


# --- Communications ---


class TestCommunications:
    async def test_create_and_list(self, store, world):
        request = await _new_request(store, world)
        first = await store.create_communication(
            request.id, world.patient.id, "patient", world.operator_a.id, "ambulance", "Please hurry"
        )
        second = await store.create_communication(
            request.id, world.operator_a.id, "ambulance", world.patient.id, "patient", "Two minutes out"
        )
        listed = await store.list_communications(request.id)
        assert [c.id for c in listed] == [second.id, first.id]
        assert first.is_read is False

    async def test_mark_read(self, store, world):
        request = await _new_request(store, world)
        message = await store.create_communication(
            request.id, world.patient.id, "patient", world.operator_a.id, "ambulance", "Hello"
        )
        updated = await store.mark_communication_read(message.id)
        assert updated.is_read is True

    async def test_mark_read_unknown(self, store, world):
        with pytest.raises(NotFound):
            await store.mark_communication_read(12345)
