"""Emergency request lifecycle.

    pending -> accepted -> dispatched -> en_route -> at_scene -> transporting -> completed
    any non-terminal state -> cancelled

Every state-changing operation validates first, mutates through a single
conditional store write, and only then tells the dispatcher who must hear
about it. A rejected operation raises (Conflict / Forbidden / NotFound /
InvalidInput) without touching state or emitting events.
"""

import logging
from datetime import UTC, datetime

from app.errors import Conflict, Forbidden, InvalidInput, NotFound
from app.models.emergency import (
    TERMINAL_STATUSES,
    EmergencyRequest,
    EmergencyRequestCreate,
    RequestStatus,
)
from app.models.events import (
    AMBULANCE_LOCATION_UPDATE,
    EMERGENCY_STATUS_UPDATE,
    HOSPITAL_STATUS_UPDATE,
    NEW_EMERGENCY_REQUEST,
    make_event,
)
from app.models.fleet import Ambulance, BedStatusLog, Hospital
from app.services.auth import Identity
from app.services.dispatcher import Dispatcher
from app.services.geo import estimate_arrival_minutes
from app.services.store import Store

logger = logging.getLogger(__name__)

NEXT_STATUS: dict[RequestStatus, RequestStatus] = {
    RequestStatus.PENDING: RequestStatus.ACCEPTED,
    RequestStatus.ACCEPTED: RequestStatus.DISPATCHED,
    RequestStatus.DISPATCHED: RequestStatus.EN_ROUTE,
    RequestStatus.EN_ROUTE: RequestStatus.AT_SCENE,
    RequestStatus.AT_SCENE: RequestStatus.TRANSPORTING,
    RequestStatus.TRANSPORTING: RequestStatus.COMPLETED,
}

# ETA may be recorded once accepted and refined until the crew reaches the scene
ETA_STATUSES = frozenset({RequestStatus.ACCEPTED, RequestStatus.DISPATCHED, RequestStatus.EN_ROUTE})

PRIVILEGED_ROLES = frozenset({"hospital", "admin"})


def allowed_transitions(status: RequestStatus) -> set[RequestStatus]:
    if status in TERMINAL_STATUSES:
        return set()
    return {NEXT_STATUS[status], RequestStatus.CANCELLED}


class LifecycleEngine:
    def __init__(self, store: Store, dispatcher: Dispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher

    # --- Lookups ---

    async def _load(self, request_id: int) -> EmergencyRequest:
        request = await self.store.get_request(request_id)
        if request is None:
            raise NotFound(f"Emergency request {request_id} not found")
        return request

    async def get_request(self, request_id: int, actor: Identity) -> EmergencyRequest:
        request = await self._load(request_id)
        if actor.role == "patient" and request.patient_id != actor.user_id:
            raise Forbidden("Patients can only view their own requests", rule="not_request_owner")
        return request

    async def requests_for(self, actor: Identity) -> list[EmergencyRequest]:
        """Requests visible to a role: patients see their own, everyone else sees active ones."""
        if actor.role == "patient":
            return await self.store.list_requests_by_patient(actor.user_id)
        return await self.store.list_active_requests()

    async def _operator_ambulance(self, actor: Identity) -> Ambulance:
        ambulance = await self.store.get_ambulance_by_operator(actor.user_id)
        if ambulance is None:
            raise NotFound(f"No active ambulance for operator {actor.user_id}")
        return ambulance

    async def _parties(self, request: EmergencyRequest) -> list[tuple[str, int]]:
        """Everyone attached to a request: patient, ambulance crew, receiving hospital staff."""
        parties = [("patient", request.patient_id)]
        if request.ambulance_id is not None:
            ambulance = await self.store.get_ambulance(request.ambulance_id)
            if ambulance and ambulance.operator_id is not None:
                parties.append(("ambulance", ambulance.operator_id))
        if request.hospital_id is not None:
            for staff in await self.store.get_hospital_staff(request.hospital_id):
                parties.append(("hospital", staff.id))
        return parties

    # --- Permission checks ---

    async def _require_assigned_crew_or_privileged(self, request: EmergencyRequest, actor: Identity) -> None:
        if actor.role in PRIVILEGED_ROLES:
            return
        if actor.role == "ambulance" and request.ambulance_id is not None:
            ambulance = await self.store.get_ambulance(request.ambulance_id)
            if ambulance and ambulance.operator_id == actor.user_id:
                return
        raise Forbidden(f"{actor.role} {actor.user_id} cannot advance request {request.id}")

    async def _require_hospital_staff(self, actor: Identity, hospital_id: int) -> None:
        if actor.role == "admin":
            return
        if actor.role == "hospital":
            user = await self.store.get_user(actor.user_id)
            if user and user.hospital_id == hospital_id:
                return
        raise Forbidden(f"{actor.role} {actor.user_id} cannot manage hospital {hospital_id}")

    # --- Broadcasting ---

    async def _announce(
        self,
        request: EmergencyRequest,
        previous_status: RequestStatus,
        parties_from: EmergencyRequest | None = None,
    ) -> None:
        event = make_event(EMERGENCY_STATUS_UPDATE, request.model_dump(mode="json"))
        parties = await self._parties(parties_from or request)
        if previous_status == RequestStatus.PENDING:
            # Every ambulance saw the request while it was unclaimed
            await self.dispatcher.broadcast_to_role("ambulance", event)
            parties = [p for p in parties if p[0] != "ambulance"]
        await self.dispatcher.send_to_parties(parties, event)

    async def _announce_hospital(self, hospital: Hospital) -> None:
        event = make_event(HOSPITAL_STATUS_UPDATE, hospital.model_dump(mode="json"))
        await self.dispatcher.broadcast_to_role("ambulance", event)

    # --- Operations ---

    async def create_request(self, actor: Identity, body: EmergencyRequestCreate) -> EmergencyRequest:
        """Open a new request as pending and offer it to every connected ambulance."""
        if actor.role != "patient":
            raise Forbidden("Only patients can raise emergency requests")
        request = await self.store.create_request(actor.user_id, body)
        logger.info("Emergency request %s opened by patient %s (%s)", request.id, actor.user_id, request.priority)
        await self.dispatcher.broadcast_to_role(
            "ambulance", make_event(NEW_EMERGENCY_REQUEST, request.model_dump(mode="json"))
        )
        return request

    async def accept(self, request_id: int, actor: Identity, ambulance_id: int | None = None) -> EmergencyRequest:
        """Bind a pending request to the caller's ambulance. First writer wins."""
        if actor.role != "ambulance":
            raise Forbidden("Only ambulance crews can accept requests")
        request = await self._load(request_id)
        if request.status in TERMINAL_STATUSES:
            raise Conflict("terminal_state", f"Request {request_id} is already {request.status.value}")
        if request.status != RequestStatus.PENDING or request.ambulance_id is not None:
            raise Conflict("request_already_claimed", f"Request {request_id} was already accepted")

        ambulance = await self._operator_ambulance(actor)
        if ambulance_id is not None and ambulance_id != ambulance.id:
            raise Forbidden(f"Ambulance {ambulance_id} is not operated by user {actor.user_id}")
        if ambulance.status != "available":
            raise Conflict("ambulance_not_available", f"Ambulance {ambulance.id} is {ambulance.status}")

        if not await self.store.claim_ambulance(ambulance.id):
            raise Conflict("ambulance_not_available", f"Ambulance {ambulance.id} is no longer available")
        if not await self.store.claim_request(request_id, ambulance.id):
            await self.store.set_ambulance_status(ambulance.id, "available")
            raise Conflict("request_already_claimed", f"Request {request_id} was accepted by another ambulance")

        updated = await self._load(request_id)
        logger.info("Request %s accepted by ambulance %s", request_id, ambulance.id)
        await self._announce(updated, RequestStatus.PENDING)
        return updated

    async def record_eta(self, request_id: int, actor: Identity, minutes: int | None = None) -> EmergencyRequest:
        """Record and broadcast the ETA. Must happen before the request can be dispatched."""
        request = await self._load(request_id)
        if request.status not in ETA_STATUSES:
            raise Conflict("eta_not_applicable", f"Cannot set an ETA on a {request.status.value} request")
        await self._require_assigned_crew_or_privileged(request, actor)

        if minutes is None:
            ambulance = await self.store.get_ambulance(request.ambulance_id)
            if ambulance is None or ambulance.current_latitude is None or ambulance.current_longitude is None:
                raise InvalidInput("Ambulance position unknown; supply estimated_arrival_minutes")
            minutes = estimate_arrival_minutes(
                ambulance.current_latitude, ambulance.current_longitude, request.latitude, request.longitude
            )
        if minutes < 0:
            raise InvalidInput("estimated_arrival_minutes must be non-negative")

        if not await self.store.set_request_eta(request_id, request.status, minutes):
            raise Conflict("concurrent_update", f"Request {request_id} changed while setting the ETA")
        updated = await self._load(request_id)
        logger.info("Request %s ETA %s min", request_id, minutes)
        await self._announce(updated, request.status)
        return updated

    async def transition(
        self,
        request_id: int,
        actor: Identity,
        target: RequestStatus | str,
        *,
        hospital_id: int | None = None,
        bed_number: str | None = None,
        eta_minutes: int | None = None,
    ) -> EmergencyRequest:
        """Move a request to ``target``, enforcing the transition table and its side rules."""
        try:
            target = RequestStatus(target)
        except ValueError:
            raise InvalidInput(f"Unknown status {target!r}") from None

        if bed_number is not None and target != RequestStatus.COMPLETED:
            raise Conflict(
                "bed_assignment_only_on_completion",
                "A bed can only be assigned when the request is completed",
            )
        if target == RequestStatus.CANCELLED:
            if eta_minutes is not None:
                raise InvalidInput("An ETA cannot accompany a cancellation")
            return await self.cancel(request_id, actor)
        if target == RequestStatus.ACCEPTED:
            request = await self.accept(request_id, actor)
            if eta_minutes is not None:
                request = await self.record_eta(request_id, actor, eta_minutes)
            return request

        request = await self._load(request_id)
        if request.status in TERMINAL_STATUSES:
            raise Conflict("terminal_state", f"Request {request_id} is already {request.status.value}")
        if target not in allowed_transitions(request.status):
            raise Conflict(
                "invalid_transition",
                f"Cannot move request {request_id} from {request.status.value} to {target.value}",
            )
        await self._require_assigned_crew_or_privileged(request, actor)

        if hospital_id is not None and await self.store.get_hospital(hospital_id) is None:
            raise NotFound(f"Hospital {hospital_id} not found")

        # Recorded against the current status, so it is refused outside ETA_STATUSES
        if eta_minutes is not None:
            request = await self.record_eta(request_id, actor, eta_minutes)

        if target == RequestStatus.DISPATCHED:
            if request.estimated_arrival_minutes is None:
                raise Conflict(
                    "eta_required_before_dispatch",
                    f"Request {request_id} needs an ETA before it can be dispatched",
                )

        if target == RequestStatus.COMPLETED:
            return await self._complete(request, hospital_id, bed_number)

        fields = {"hospital_id": hospital_id} if hospital_id is not None else {}
        if not await self.store.transition_request(request_id, request.status, target, **fields):
            raise Conflict("concurrent_update", f"Request {request_id} changed during the update")
        updated = await self._load(request_id)
        logger.info("Request %s: %s -> %s", request_id, request.status.value, target.value)
        await self._announce(updated, request.status)
        return updated

    async def _complete(
        self,
        request: EmergencyRequest,
        hospital_id: int | None,
        bed_number: str | None,
    ) -> EmergencyRequest:
        hospital_id = hospital_id if hospital_id is not None else request.hospital_id
        slot: BedStatusLog | None = None
        if bed_number is not None:
            if hospital_id is None:
                raise Conflict("hospital_required_for_bed", "A receiving hospital is required to assign a bed")
            patient = await self.store.get_user(request.patient_id)
            slot = await self.store.occupy_bed(
                hospital_id, bed_number, patient.display_name if patient else None, request.id
            )

        fields = {}
        if hospital_id is not None:
            fields["hospital_id"] = hospital_id
        if slot is not None:
            fields["assigned_bed_number"] = slot.bed_number
        if not await self.store.transition_request(request.id, request.status, RequestStatus.COMPLETED, **fields):
            if slot is not None:
                await self.store.release_bed(hospital_id, slot.bed_number)
            raise Conflict("concurrent_update", f"Request {request.id} changed during completion")

        if request.ambulance_id is not None:
            await self.store.set_ambulance_status(request.ambulance_id, "available")

        updated = await self._load(request.id)
        logger.info("Request %s completed (bed %s)", request.id, bed_number or "-")
        await self._announce(updated, request.status)
        if slot is not None:
            await self._announce_hospital(await self.store.get_hospital(hospital_id))
        return updated

    async def cancel(self, request_id: int, actor: Identity) -> EmergencyRequest:
        """Cancel from any non-terminal state. Patients may only cancel their own requests."""
        request = await self._load(request_id)
        if request.status in TERMINAL_STATUSES:
            raise Conflict("terminal_state", f"Request {request_id} is already {request.status.value}")
        if actor.role == "patient":
            if request.patient_id != actor.user_id:
                raise Forbidden("Patients can only cancel their own requests", rule="not_request_owner")
        else:
            await self._require_assigned_crew_or_privileged(request, actor)

        if not await self.store.transition_request(
            request_id, request.status, RequestStatus.CANCELLED, ambulance_id=None
        ):
            raise Conflict("concurrent_update", f"Request {request_id} changed during cancellation")
        if request.ambulance_id is not None:
            await self.store.set_ambulance_status(request.ambulance_id, "available")

        updated = await self._load(request_id)
        logger.info("Request %s cancelled by %s %s", request_id, actor.role, actor.user_id)
        await self._announce(updated, request.status, parties_from=request)
        return updated

    async def archive(self, request_id: int, actor: Identity) -> None:
        """Hide a finished request from listings. The row itself is kept."""
        request = await self._load(request_id)
        if actor.role == "patient" and request.patient_id != actor.user_id:
            raise Forbidden("Patients can only archive their own requests", rule="not_request_owner")
        if actor.role == "ambulance":
            raise Forbidden("Ambulance crews cannot archive requests")
        if request.status not in TERMINAL_STATUSES:
            raise Conflict("request_not_terminal", f"Request {request_id} is still {request.status.value}")
        await self.store.archive_request(request_id)
        logger.info("Request %s archived", request_id)

    async def update_ambulance_location(self, actor: Identity, lat: float, lng: float) -> Ambulance:
        """Store a location ping and relay it to hospitals and the patient being served."""
        if actor.role != "ambulance":
            raise Forbidden("Only ambulance crews report locations")
        ambulance = await self._operator_ambulance(actor)
        ambulance = await self.store.update_ambulance_location(ambulance.id, lat, lng)

        event = make_event(AMBULANCE_LOCATION_UPDATE, {
            "ambulance_id": ambulance.id,
            "lat": lat,
            "lng": lng,
            "timestamp": datetime.now(UTC).isoformat(),
        })
        await self.dispatcher.broadcast_to_role("hospital", event)
        active = await self.store.get_active_request_for_ambulance(ambulance.id)
        if active is not None:
            await self.dispatcher.send_to_identity("patient", active.patient_id, event)
        return ambulance

    async def update_hospital_status(self, actor: Identity, hospital_id: int, emergency_status: str) -> Hospital:
        await self._require_hospital_staff(actor, hospital_id)
        hospital = await self.store.update_hospital_status(hospital_id, emergency_status)
        logger.info("Hospital %s now %s", hospital_id, emergency_status)
        await self._announce_hospital(hospital)
        return hospital

    async def release_bed(self, actor: Identity, hospital_id: int, bed_number: str) -> BedStatusLog:
        await self._require_hospital_staff(actor, hospital_id)
        slot = await self.store.release_bed(hospital_id, bed_number)
        await self._announce_hospital(await self.store.get_hospital(hospital_id))
        return slot
