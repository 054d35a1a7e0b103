from __future__ import annotations

import os
import secrets
from contextlib import asynccontextmanager
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, FastAPI, File, Form, Request, Response, UploadFile
from pydantic import BaseModel, Field

from aura_core.artifacts.types import FirmwareRecord
from aura_core.config import Config, get_config
from aura_core.errors import AuthError, NotFound
from aura_core.fleet.types import DeviceRecord
from aura_core.health.types import HealthReport
from aura_core.logging import configure_logging, get_logger
from aura_core.releases.types import Release, ReleaseEvent, StageProgress
from aura_core.services.container import FleetServices, build_services
from aura_core.services.fastapi_scaffolding import (
    HealthResponse,
    add_correlation_id_middleware,
    add_error_handlers,
    apply_cors_middleware,
    build_health_response,
)

SERVICE_NAME = "aura-fleet"

configure_logging(
    service=SERVICE_NAME,
    env=os.getenv("ENV"),
    version=os.getenv("AURA_VERSION"),
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    services = build_services(get_config())
    app.state.services = services
    services.start()
    try:
        yield
    finally:
        services.stop()
        app.state.services = None


app = FastAPI(lifespan=lifespan)
apply_cors_middleware(app)
add_correlation_id_middleware(app)
add_error_handlers(app)


class DeviceResponse(BaseModel):
    id: str
    name: str | None = None
    state: str
    fleet_tags: list[str]
    firmware_id: str | None = None
    assigned_firmware_id: str | None = None
    assigned_release_id: str | None = None
    certificate_serial: str | None = None
    claimed_at: str | None = None
    provisioned_at: str | None = None
    deregistered_at: str | None = None
    last_seen_at: str | None = None
    created_at: str
    updated_at: str


class DeviceEnvelope(BaseModel):
    device: DeviceResponse


class DeviceListResponse(BaseModel):
    devices: list[DeviceResponse]
    total: int


class ClaimRequest(BaseModel):
    bootstrap_token: str = Field(min_length=1)


class RegisterRequest(BaseModel):
    name: str | None = None
    fleet_tags: list[str] | None = None
    firmware_id: str | None = None


class RegisterResponse(BaseModel):
    device: DeviceResponse
    bootstrap_token: str


class CredentialsResponse(BaseModel):
    certificate_serial: str
    client_certificate: str
    client_key: str
    ca_certificate: str
    not_after: str


class ProvisionResponse(BaseModel):
    device: DeviceResponse
    credentials: CredentialsResponse | None = None


class CaCertificateResponse(BaseModel):
    ca_certificate: str


class FleetTagsRequest(BaseModel):
    fleet_tags: list[str]


class AssignmentResponse(BaseModel):
    device_id: str
    release_id: str | None = None
    firmware_id: str
    version: str
    checksum: str
    firmware_url: str
    action: str


class HealthSampleRequest(BaseModel):
    release_id: str
    status: str
    kind: str = "heartbeat"
    detail: str | None = None


class HealthSampleResponse(BaseModel):
    id: str
    release_id: str
    device_id: str
    status: str
    kind: str
    detail: str | None = None
    reported_at: str


class FirmwareResponse(BaseModel):
    id: str
    version: str
    description: str | None = None
    file_size: int
    checksum: str
    storage_uri: str
    created_at: str


class FirmwareEnvelope(BaseModel):
    firmware: FirmwareResponse


class FirmwareListResponse(BaseModel):
    firmwares: list[FirmwareResponse]
    total: int


class StageProgressResponse(BaseModel):
    stage: str
    device_ids: list[str]
    started_at: str
    updated: int
    skipped: int
    healthy: int
    degraded: int
    failed: int
    silent: int
    verdict: str | None = None


class ReleaseResponse(BaseModel):
    id: str
    firmware_id: str
    target_fleet: str
    health_policy: str
    status: str
    stage: str
    progress: StageProgressResponse | None = None
    held_reason: str | None = None
    created_by: str | None = None
    created_at: str
    updated_at: str


class ReleaseEnvelope(BaseModel):
    release: ReleaseResponse


class ReleaseListResponse(BaseModel):
    releases: list[ReleaseResponse]
    total: int


class ReleaseCreateRequest(BaseModel):
    firmware_id: str = Field(min_length=1)
    target_fleet: str | None = None
    health_policy: str = "auto-rollback"


class ReleaseStatusRequest(BaseModel):
    status: str
    stage: str | None = None


class ReleaseEventResponse(BaseModel):
    id: str
    seq: int
    kind: str
    status: str | None = None
    stage: str | None = None
    device_ids: list[str]
    detail: dict[str, object] | None = None
    actor: str | None = None
    created_at: str


class ReleaseEventListResponse(BaseModel):
    events: list[ReleaseEventResponse]
    total: int


class ReleaseHealthResponse(BaseModel):
    release_id: str
    stage: str
    verdict: str | None = None
    final: bool = False
    total: int = 0
    healthy: int = 0
    degraded: int = 0
    failed: int = 0
    silent: int = 0
    window_elapsed: bool = False
    failed_devices: list[str] = []
    evaluated_at: str | None = None


def _services(request: Request) -> FleetServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("fleet services are not initialized")
    return services


def _api_key_required(config: Config) -> bool:
    return config.env.lower() not in {"dev", "local", "test"} or bool(config.fleet_api_key)


def _authorize(request: Request) -> str | None:
    config = _services(request).config
    if not _api_key_required(config):
        return None
    expected = config.fleet_api_key
    raw_key = request.headers.get("x-api-key")
    if not expected:
        raise AuthError("FLEET_API_KEY is not configured")
    if not raw_key or not secrets.compare_digest(raw_key, expected):
        raise AuthError("Unauthorized")
    return "api-key"


def _actor(request: Request) -> str:
    return request.headers.get("x-actor") or "operator"


def _device_response(device: DeviceRecord) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        name=device.name,
        state=device.state,
        fleet_tags=list(device.fleet_tags),
        firmware_id=device.firmware_id,
        assigned_firmware_id=device.assigned_firmware_id,
        assigned_release_id=device.assigned_release_id,
        certificate_serial=device.certificate_serial,
        claimed_at=device.claimed_at,
        provisioned_at=device.provisioned_at,
        deregistered_at=device.deregistered_at,
        last_seen_at=device.last_seen_at,
        created_at=device.created_at,
        updated_at=device.updated_at,
    )


def _firmware_response(record: FirmwareRecord) -> FirmwareResponse:
    return FirmwareResponse(
        id=record.id,
        version=record.version,
        description=record.description,
        file_size=record.size,
        checksum=record.checksum,
        storage_uri=record.storage_uri,
        created_at=record.created_at,
    )


def _progress_response(progress: StageProgress | None) -> StageProgressResponse | None:
    if progress is None:
        return None
    return StageProgressResponse(
        stage=progress.stage,
        device_ids=list(progress.device_ids),
        started_at=progress.started_at,
        updated=progress.updated,
        skipped=progress.skipped,
        healthy=progress.healthy,
        degraded=progress.degraded,
        failed=progress.failed,
        silent=progress.silent,
        verdict=progress.verdict,
    )


def _release_response(release: Release) -> ReleaseResponse:
    return ReleaseResponse(
        id=release.id,
        firmware_id=release.firmware_id,
        target_fleet=release.target_fleet,
        health_policy=release.health_policy,
        status=release.status,
        stage=release.stage,
        progress=_progress_response(release.progress),
        held_reason=release.held_reason,
        created_by=release.created_by,
        created_at=release.created_at,
        updated_at=release.updated_at,
    )


def _event_response(event: ReleaseEvent) -> ReleaseEventResponse:
    return ReleaseEventResponse(
        id=event.id,
        seq=event.seq,
        kind=event.kind,
        status=event.status,
        stage=event.stage,
        device_ids=list(event.device_ids),
        detail=event.detail,
        actor=event.actor,
        created_at=event.created_at,
    )


def _health_response(release: Release, report: HealthReport | None) -> ReleaseHealthResponse:
    if report is None:
        return ReleaseHealthResponse(release_id=release.id, stage=release.stage)
    return ReleaseHealthResponse(
        release_id=release.id,
        stage=release.stage,
        verdict=report.verdict,
        final=report.final,
        total=report.total,
        healthy=report.healthy,
        degraded=report.degraded,
        failed=report.failed,
        silent=report.silent,
        window_elapsed=report.window_elapsed,
        failed_devices=list(report.failed_devices),
        evaluated_at=report.evaluated_at,
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return build_health_response(SERVICE_NAME)


@app.get("/ready", response_model=HealthResponse)
async def ready(request: Request, response: Response) -> HealthResponse:
    services = getattr(request.app.state, "services", None)
    ok = services is not None and (
        not services.config.rollout_runner_enabled or services.runner.running
    )
    if not ok:
        response.status_code = 503
    return build_health_response(SERVICE_NAME, status="ok" if ok else "unavailable")


router = APIRouter()


@router.get("/devices", response_model=DeviceListResponse)
def list_devices(request: Request, fleet: str | None = None) -> DeviceListResponse:
    _authorize(request)
    devices = _services(request).registry.list_devices()
    if fleet and fleet.strip().lower() != "all":
        tag = fleet.strip().lower()
        devices = [device for device in devices if tag in device.fleet_tags]
    return DeviceListResponse(
        devices=[_device_response(device) for device in devices],
        total=len(devices),
    )


@router.post("/devices", response_model=DeviceEnvelope, status_code=201)
def claim_device(request: Request, payload: ClaimRequest) -> DeviceEnvelope:
    _authorize(request)
    device = _services(request).registry.claim(payload.bootstrap_token)
    logger.info(
        "Device claim accepted",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", None),
            "device_id": device.id,
            "actor": _actor(request),
        },
    )
    return DeviceEnvelope(device=_device_response(device))


@router.post("/devices/register", response_model=RegisterResponse, status_code=201)
def register_device(request: Request, payload: RegisterRequest) -> RegisterResponse:
    _authorize(request)
    registered = _services(request).registry.register(
        name=payload.name,
        fleet_tags=payload.fleet_tags,
        firmware_id=payload.firmware_id,
    )
    return RegisterResponse(
        device=_device_response(registered.device),
        bootstrap_token=registered.bootstrap_token,
    )


@router.get("/devices/{device_id}", response_model=DeviceEnvelope)
def get_device(request: Request, device_id: str) -> DeviceEnvelope:
    _authorize(request)
    device = _services(request).registry.get(device_id)
    return DeviceEnvelope(device=_device_response(device))


@router.post("/devices/{device_id}/provision", response_model=ProvisionResponse)
def provision_device(request: Request, device_id: str) -> ProvisionResponse:
    _authorize(request)
    result = _services(request).provisioner.provision(device_id)
    credentials = None
    if result.credentials is not None:
        issued = result.credentials
        credentials = CredentialsResponse(
            certificate_serial=issued.serial,
            client_certificate=issued.certificate_pem,
            client_key=issued.private_key_pem,
            ca_certificate=issued.ca_certificate_pem,
            not_after=issued.not_after,
        )
    return ProvisionResponse(
        device=_device_response(result.device),
        credentials=credentials,
    )


@router.get("/pki/ca", response_model=CaCertificateResponse)
def get_ca_certificate(request: Request) -> CaCertificateResponse:
    pem = _services(request).authority.ca_certificate_pem()
    return CaCertificateResponse(ca_certificate=pem)


@router.put("/devices/{device_id}/fleet", response_model=DeviceEnvelope)
def set_device_fleet(
    request: Request,
    device_id: str,
    payload: FleetTagsRequest,
) -> DeviceEnvelope:
    _authorize(request)
    device = _services(request).registry.set_fleet_tags(device_id, payload.fleet_tags)
    return DeviceEnvelope(device=_device_response(device))


@router.delete("/devices/{device_id}", response_model=DeviceEnvelope)
def deregister_device(request: Request, device_id: str) -> DeviceEnvelope:
    _authorize(request)
    device = _services(request).registry.deregister(device_id)
    return DeviceEnvelope(device=_device_response(device))


@router.get("/devices/{device_id}/assignment", response_model=AssignmentResponse)
def device_assignment(request: Request, device_id: str) -> AssignmentResponse:
    _authorize(request)
    assignment = _services(request).engine.assignment_for(device_id)
    if assignment is None:
        raise NotFound(f"device {device_id} has no firmware assignment")
    return AssignmentResponse(**assignment)


@router.post(
    "/devices/{device_id}/health",
    response_model=HealthSampleResponse,
    status_code=202,
)
def report_device_health(
    request: Request,
    device_id: str,
    payload: HealthSampleRequest,
) -> HealthSampleResponse:
    _authorize(request)
    services = _services(request)
    sample = services.engine.report_health(
        device_id,
        release_id=payload.release_id,
        status=payload.status,
        kind=payload.kind,
        detail=payload.detail,
    )
    services.runner.nudge()
    return HealthSampleResponse(
        id=sample.id,
        release_id=sample.release_id,
        device_id=sample.device_id,
        status=sample.status,
        kind=sample.kind,
        detail=sample.detail,
        reported_at=sample.reported_at,
    )


@router.get("/firmware", response_model=FirmwareListResponse)
def list_firmware(request: Request) -> FirmwareListResponse:
    _authorize(request)
    records = _services(request).artifacts.list_firmware()
    return FirmwareListResponse(
        firmwares=[_firmware_response(record) for record in records],
        total=len(records),
    )


@router.post("/firmware", response_model=FirmwareEnvelope, status_code=201)
def upload_firmware(
    request: Request,
    file: Annotated[UploadFile, File()],
    version: Annotated[str, Form()],
    description: Annotated[str | None, Form()] = None,
    checksum: Annotated[str | None, Form()] = None,
    size: Annotated[int | None, Form()] = None,
) -> FirmwareEnvelope:
    _authorize(request)
    record = _services(request).artifacts.put(
        file.file,
        version=version,
        description=description,
        expected_checksum=checksum or None,
        expected_size=size,
    )
    return FirmwareEnvelope(firmware=_firmware_response(record))


@router.get("/firmware/{firmware_id}", response_model=FirmwareEnvelope)
def get_firmware(request: Request, firmware_id: str) -> FirmwareEnvelope:
    _authorize(request)
    record = _services(request).artifacts.get_record(firmware_id)
    return FirmwareEnvelope(firmware=_firmware_response(record))


@router.get("/firmware/{firmware_id}/download")
def download_firmware(request: Request, firmware_id: str) -> Response:
    _authorize(request)
    payload, checksum = _services(request).artifacts.get(firmware_id)
    return Response(
        content=payload,
        media_type="application/octet-stream",
        headers={
            "x-checksum": f"sha256:{checksum}",
            "content-disposition": f'attachment; filename="{firmware_id}.bin"',
        },
    )


@router.get("/releases", response_model=ReleaseListResponse)
def list_releases(request: Request, status: str | None = None) -> ReleaseListResponse:
    _authorize(request)
    releases = _services(request).engine.list_releases(status=status)
    return ReleaseListResponse(
        releases=[_release_response(release) for release in releases],
        total=len(releases),
    )


@router.post("/releases", response_model=ReleaseEnvelope, status_code=201)
def create_release(request: Request, payload: ReleaseCreateRequest) -> ReleaseEnvelope:
    _authorize(request)
    services = _services(request)
    release = services.engine.create_release(
        payload.firmware_id,
        payload.target_fleet,
        payload.health_policy,
        actor=_actor(request),
    )
    services.runner.nudge()
    return ReleaseEnvelope(release=_release_response(release))


@router.get("/releases/{release_id}", response_model=ReleaseEnvelope)
def get_release(request: Request, release_id: str) -> ReleaseEnvelope:
    _authorize(request)
    release = _services(request).engine.get_release(release_id)
    return ReleaseEnvelope(release=_release_response(release))


@router.put("/releases/{release_id}/status", response_model=ReleaseEnvelope)
def update_release_status(
    request: Request,
    release_id: str,
    payload: ReleaseStatusRequest,
) -> ReleaseEnvelope:
    _authorize(request)
    services = _services(request)
    release = services.engine.command(
        release_id,
        payload.status,
        stage=payload.stage,
        actor=_actor(request),
    )
    services.runner.nudge()
    return ReleaseEnvelope(release=_release_response(release))


@router.get("/releases/{release_id}/events", response_model=ReleaseEventListResponse)
def list_release_events(request: Request, release_id: str) -> ReleaseEventListResponse:
    _authorize(request)
    events = _services(request).engine.events(release_id)
    return ReleaseEventListResponse(
        events=[_event_response(event) for event in events],
        total=len(events),
    )


@router.get("/releases/{release_id}/health", response_model=ReleaseHealthResponse)
def release_health(request: Request, release_id: str) -> ReleaseHealthResponse:
    _authorize(request)
    engine = _services(request).engine
    release = engine.get_release(release_id)
    return _health_response(release, engine.release_health(release_id))


app.include_router(router, prefix="/" + os.getenv("API_PREFIX", "/api/v1").strip("/"))
