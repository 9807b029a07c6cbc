"""Persistent store: data access for users, hospitals, ambulances, requests,
bed slots and chat messages.

No dispatch policy lives here. Writes stamp ``updated_at``. Operations that
must not lose a race (claiming an ambulance, claiming a request, moving a
request between statuses, flipping a bed slot) are single conditional UPDATE
statements that report whether they won.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from app.config import NEARBY_RADIUS_DEGREES
from app.database import DatabaseAdapter
from app.errors import Conflict, NotFound
from app.models.communication import Communication
from app.models.emergency import EmergencyRequest, EmergencyRequestCreate, RequestStatus
from app.models.fleet import Ambulance, BedStatusLog, Hospital, User

logger = logging.getLogger(__name__)

_REQUEST_MUTABLE_FIELDS = frozenset({
    "ambulance_id",
    "hospital_id",
    "assigned_bed_number",
    "estimated_arrival_minutes",
})


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _status_value(status: RequestStatus | str) -> str:
    return status.value if isinstance(status, RequestStatus) else status


class Store:
    def __init__(self, db: DatabaseAdapter):
        self.db = db

    async def _fetch_returning(self, query: str, params: tuple):
        # Drain the cursor so the statement is finished before commit
        rows = await self.db.fetch_all(query, params)
        return rows[0] if rows else None

    # --- Users ---

    async def create_user(
        self,
        username: str,
        role: str,
        first_name: str | None = None,
        last_name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        hospital_id: int | None = None,
    ) -> User:
        now = _now()
        row = await self._fetch_returning(
            """INSERT INTO users (
                username, email, role, first_name, last_name, phone, hospital_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) RETURNING *""",
            (username, email, role, first_name, last_name, phone, hospital_id, now, now),
        )
        await self.db.commit()
        return User.model_validate(dict(row))

    async def get_user(self, user_id: int) -> User | None:
        row = await self.db.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.model_validate(dict(row)) if row else None

    async def get_hospital_staff(self, hospital_id: int) -> list[User]:
        rows = await self.db.fetch_all(
            "SELECT * FROM users WHERE role = 'hospital' AND hospital_id = ? AND is_active = 1",
            (hospital_id,),
        )
        return [User.model_validate(dict(r)) for r in rows]

    # --- Hospitals and bed slots ---

    async def create_hospital(
        self,
        name: str,
        latitude: float,
        longitude: float,
        general_beds: int = 0,
        icu_beds: int = 0,
        address: str | None = None,
        phone: str | None = None,
    ) -> Hospital:
        """Create a hospital together with one slot row per physical bed."""
        now = _now()
        row = await self._fetch_returning(
            """INSERT INTO hospitals (
                name, address, phone, latitude, longitude, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?) RETURNING id""",
            (name, address, phone, latitude, longitude, now, now),
        )
        hospital_id = row["id"]
        slots = [(hospital_id, f"G-{n:02d}", "general", now, now) for n in range(1, general_beds + 1)]
        slots += [(hospital_id, f"ICU-{n:02d}", "icu", now, now) for n in range(1, icu_beds + 1)]
        if slots:
            await self.db.executemany(
                """INSERT INTO bed_status_logs (hospital_id, bed_number, bed_type, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)""",
                slots,
            )
        return await self.refresh_bed_counts(hospital_id)

    async def get_hospital(self, hospital_id: int) -> Hospital | None:
        row = await self.db.fetch_one("SELECT * FROM hospitals WHERE id = ?", (hospital_id,))
        return Hospital.model_validate(dict(row)) if row else None

    async def list_hospitals(self) -> list[Hospital]:
        rows = await self.db.fetch_all("SELECT * FROM hospitals ORDER BY id")
        return [Hospital.model_validate(dict(r)) for r in rows]

    async def nearby_hospitals(
        self, lat: float, lng: float, radius: float = NEARBY_RADIUS_DEGREES
    ) -> list[Hospital]:
        """Hospitals within ``radius`` degrees (planar approximation, see app.services.geo)."""
        rows = await self.db.fetch_all(
            """SELECT * FROM hospitals
            WHERE (latitude - ?) * (latitude - ?) + (longitude - ?) * (longitude - ?) <= ? * ?
            ORDER BY id""",
            (lat, lat, lng, lng, radius, radius),
        )
        return [Hospital.model_validate(dict(r)) for r in rows]

    async def update_hospital_status(self, hospital_id: int, emergency_status: str) -> Hospital:
        count = await self.db.execute(
            "UPDATE hospitals SET emergency_status = ?, updated_at = ? WHERE id = ?",
            (emergency_status, _now(), hospital_id),
        )
        if count == 0:
            raise NotFound(f"Hospital {hospital_id} not found")
        await self.db.commit()
        return await self.get_hospital(hospital_id)

    async def list_bed_slots(self, hospital_id: int) -> list[BedStatusLog]:
        rows = await self.db.fetch_all(
            "SELECT * FROM bed_status_logs WHERE hospital_id = ? ORDER BY bed_type, bed_number",
            (hospital_id,),
        )
        return [BedStatusLog.model_validate(dict(r)) for r in rows]

    async def get_bed_slot(self, hospital_id: int, bed_number: str) -> BedStatusLog | None:
        row = await self.db.fetch_one(
            "SELECT * FROM bed_status_logs WHERE hospital_id = ? AND bed_number = ?",
            (hospital_id, bed_number),
        )
        return BedStatusLog.model_validate(dict(row)) if row else None

    async def occupy_bed(
        self,
        hospital_id: int,
        bed_number: str,
        patient_name: str | None,
        emergency_request_id: int | None,
    ) -> BedStatusLog:
        """Flip an existing free slot to occupied in place and refresh the counters.

        Never inserts a new row: a bed that does not exist is NotFound, a bed
        that is already taken is a Conflict.
        """
        slot = await self.get_bed_slot(hospital_id, bed_number)
        if slot is None:
            raise NotFound(f"Bed {bed_number} not found at hospital {hospital_id}")
        count = await self.db.execute(
            """UPDATE bed_status_logs
            SET status = 'occupied', patient_name = ?, emergency_request_id = ?, updated_at = ?
            WHERE id = ? AND status = 'available'""",
            (patient_name, emergency_request_id, _now(), slot.id),
        )
        if count == 0:
            raise Conflict("bed_unavailable", f"Bed {bed_number} is already occupied")
        await self.refresh_bed_counts(hospital_id)
        return await self.get_bed_slot(hospital_id, bed_number)

    async def release_bed(self, hospital_id: int, bed_number: str) -> BedStatusLog:
        """Flip an occupied slot back to available in place and refresh the counters."""
        slot = await self.get_bed_slot(hospital_id, bed_number)
        if slot is None:
            raise NotFound(f"Bed {bed_number} not found at hospital {hospital_id}")
        count = await self.db.execute(
            """UPDATE bed_status_logs
            SET status = 'available', patient_name = NULL, emergency_request_id = NULL, updated_at = ?
            WHERE id = ? AND status = 'occupied'""",
            (_now(), slot.id),
        )
        if count == 0:
            raise Conflict("bed_not_occupied", f"Bed {bed_number} is not occupied")
        await self.refresh_bed_counts(hospital_id)
        return await self.get_bed_slot(hospital_id, bed_number)

    async def refresh_bed_counts(self, hospital_id: int) -> Hospital:
        """Recompute the hospital's bed counters from its slot rows."""
        count = await self.db.execute(
            """UPDATE hospitals SET
                total_beds = (SELECT COUNT(*) FROM bed_status_logs
                    WHERE hospital_id = ? AND bed_type = 'general'),
                available_beds = (SELECT COUNT(*) FROM bed_status_logs
                    WHERE hospital_id = ? AND bed_type = 'general' AND status = 'available'),
                icu_beds = (SELECT COUNT(*) FROM bed_status_logs
                    WHERE hospital_id = ? AND bed_type = 'icu'),
                available_icu_beds = (SELECT COUNT(*) FROM bed_status_logs
                    WHERE hospital_id = ? AND bed_type = 'icu' AND status = 'available'),
                updated_at = ?
            WHERE id = ?""",
            (hospital_id, hospital_id, hospital_id, hospital_id, _now(), hospital_id),
        )
        if count == 0:
            raise NotFound(f"Hospital {hospital_id} not found")
        await self.db.commit()
        return await self.get_hospital(hospital_id)

    # --- Ambulances ---

    async def create_ambulance(
        self,
        vehicle_number: str,
        operator_id: int | None = None,
        hospital_id: int | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        status: str = "available",
    ) -> Ambulance:
        now = _now()
        row = await self._fetch_returning(
            """INSERT INTO ambulances (
                vehicle_number, operator_id, hospital_id, current_latitude, current_longitude,
                status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?) RETURNING *""",
            (vehicle_number, operator_id, hospital_id, latitude, longitude, status, now, now),
        )
        await self.db.commit()
        return Ambulance.model_validate(dict(row))

    async def get_ambulance(self, ambulance_id: int) -> Ambulance | None:
        row = await self.db.fetch_one("SELECT * FROM ambulances WHERE id = ?", (ambulance_id,))
        return Ambulance.model_validate(dict(row)) if row else None

    async def get_ambulance_by_operator(self, operator_id: int) -> Ambulance | None:
        row = await self.db.fetch_one(
            "SELECT * FROM ambulances WHERE operator_id = ? AND is_active = 1 ORDER BY id LIMIT 1",
            (operator_id,),
        )
        return Ambulance.model_validate(dict(row)) if row else None

    async def list_available_ambulances(self) -> list[Ambulance]:
        rows = await self.db.fetch_all(
            "SELECT * FROM ambulances WHERE status = 'available' AND is_active = 1 ORDER BY id"
        )
        return [Ambulance.model_validate(dict(r)) for r in rows]

    async def nearby_ambulances(
        self, lat: float, lng: float, radius: float = NEARBY_RADIUS_DEGREES
    ) -> list[Ambulance]:
        """Active ambulances within ``radius`` degrees (planar approximation)."""
        rows = await self.db.fetch_all(
            """SELECT * FROM ambulances
            WHERE is_active = 1
              AND current_latitude IS NOT NULL AND current_longitude IS NOT NULL
              AND (current_latitude - ?) * (current_latitude - ?)
                + (current_longitude - ?) * (current_longitude - ?) <= ? * ?
            ORDER BY id""",
            (lat, lat, lng, lng, radius, radius),
        )
        return [Ambulance.model_validate(dict(r)) for r in rows]

    async def update_ambulance_location(self, ambulance_id: int, lat: float, lng: float) -> Ambulance:
        count = await self.db.execute(
            """UPDATE ambulances SET current_latitude = ?, current_longitude = ?, updated_at = ?
            WHERE id = ?""",
            (lat, lng, _now(), ambulance_id),
        )
        if count == 0:
            raise NotFound(f"Ambulance {ambulance_id} not found")
        await self.db.commit()
        return await self.get_ambulance(ambulance_id)

    async def claim_ambulance(self, ambulance_id: int) -> bool:
        """Mark an available, active ambulance as dispatched. False if someone got there first."""
        count = await self.db.execute(
            """UPDATE ambulances SET status = 'dispatched', updated_at = ?
            WHERE id = ? AND status = 'available' AND is_active = 1""",
            (_now(), ambulance_id),
        )
        await self.db.commit()
        return count == 1

    async def set_ambulance_status(self, ambulance_id: int, status: str) -> None:
        await self.db.execute(
            "UPDATE ambulances SET status = ?, updated_at = ? WHERE id = ?",
            (status, _now(), ambulance_id),
        )
        await self.db.commit()

    # --- Emergency requests ---

    async def create_request(self, patient_id: int, body: EmergencyRequestCreate) -> EmergencyRequest:
        now = _now()
        row = await self._fetch_returning(
            """INSERT INTO emergency_requests (
                patient_id, latitude, longitude, address, patient_condition, notes,
                priority, status, client_reference, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) RETURNING *""",
            (
                patient_id,
                body.latitude,
                body.longitude,
                body.address,
                body.patient_condition,
                body.notes,
                body.priority,
                RequestStatus.PENDING.value,
                body.client_reference,
                now,
                now,
            ),
        )
        await self.db.commit()
        return EmergencyRequest.model_validate(dict(row))

    async def get_request(self, request_id: int) -> EmergencyRequest | None:
        row = await self.db.fetch_one("SELECT * FROM emergency_requests WHERE id = ?", (request_id,))
        return EmergencyRequest.model_validate(dict(row)) if row else None

    async def _list_requests(self, where: str, params: tuple = ()) -> list[EmergencyRequest]:
        rows = await self.db.fetch_all(
            f"SELECT * FROM emergency_requests WHERE {where} ORDER BY created_at DESC, id DESC",
            params,
        )
        return [EmergencyRequest.model_validate(dict(r)) for r in rows]

    async def list_requests_by_patient(self, patient_id: int) -> list[EmergencyRequest]:
        return await self._list_requests("patient_id = ? AND archived = 0", (patient_id,))

    async def list_active_requests(self) -> list[EmergencyRequest]:
        return await self._list_requests(
            "status NOT IN ('completed', 'cancelled') AND archived = 0"
        )

    async def get_active_request_for_ambulance(self, ambulance_id: int) -> EmergencyRequest | None:
        active = await self._list_requests(
            "ambulance_id = ? AND status NOT IN ('completed', 'cancelled')", (ambulance_id,)
        )
        return active[0] if active else None

    async def claim_request(self, request_id: int, ambulance_id: int) -> bool:
        """Bind a pending, unclaimed request to an ambulance. False if it was already claimed."""
        count = await self.db.execute(
            """UPDATE emergency_requests SET status = 'accepted', ambulance_id = ?, updated_at = ?
            WHERE id = ? AND status = 'pending' AND ambulance_id IS NULL""",
            (ambulance_id, _now(), request_id),
        )
        await self.db.commit()
        return count == 1

    async def transition_request(
        self,
        request_id: int,
        expected: RequestStatus | str,
        new: RequestStatus | str,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the request status, writing ``fields`` in the same statement."""
        unknown = set(fields) - _REQUEST_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot write request fields: {sorted(unknown)}")
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [_status_value(new), _now()]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(value)
        params += [request_id, _status_value(expected)]
        count = await self.db.execute(
            f"UPDATE emergency_requests SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            tuple(params),
        )
        await self.db.commit()
        return count == 1

    async def set_request_eta(self, request_id: int, expected: RequestStatus | str, minutes: int) -> bool:
        count = await self.db.execute(
            """UPDATE emergency_requests SET estimated_arrival_minutes = ?, updated_at = ?
            WHERE id = ? AND status = ?""",
            (minutes, _now(), request_id, _status_value(expected)),
        )
        await self.db.commit()
        return count == 1

    async def archive_request(self, request_id: int) -> bool:
        """Soft-delete a finished request. Rows are retained for audit."""
        count = await self.db.execute(
            """UPDATE emergency_requests SET archived = 1, updated_at = ?
            WHERE id = ? AND status IN ('completed', 'cancelled')""",
            (_now(), request_id),
        )
        await self.db.commit()
        return count == 1

    # --- Communications ---

    async def create_communication(
        self,
        emergency_request_id: int,
        sender_id: int,
        sender_role: str,
        receiver_id: int,
        receiver_role: str,
        message: str,
        message_type: str = "text",
    ) -> Communication:
        row = await self._fetch_returning(
            """INSERT INTO communications (
                emergency_request_id, sender_id, sender_role, receiver_id, receiver_role,
                message, message_type, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?) RETURNING *""",
            (
                emergency_request_id,
                sender_id,
                sender_role,
                receiver_id,
                receiver_role,
                message,
                message_type,
                _now(),
            ),
        )
        await self.db.commit()
        return Communication.model_validate(dict(row))

    async def list_communications(self, emergency_request_id: int) -> list[Communication]:
        rows = await self.db.fetch_all(
            "SELECT * FROM communications WHERE emergency_request_id = ? ORDER BY created_at DESC, id DESC",
            (emergency_request_id,),
        )
        return [Communication.model_validate(dict(r)) for r in rows]

    async def mark_communication_read(self, communication_id: int) -> Communication:
        row = await self._fetch_returning(
            "UPDATE communications SET is_read = 1 WHERE id = ? RETURNING *",
            (communication_id,),
        )
        if row is None:
            raise NotFound(f"Communication {communication_id} not found")
        await self.db.commit()
        return Communication.model_validate(dict(row))

    async def get_communication(self, communication_id: int) -> Communication | None:
        row = await self.db.fetch_one("SELECT * FROM communications WHERE id = ?", (communication_id,))
        return Communication.model_validate(dict(row)) if row else None
