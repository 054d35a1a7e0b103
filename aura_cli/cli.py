from __future__ import annotations

import argparse
import json
import mimetypes
import os
import subprocess
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from pathlib import Path
from typing import Any

DEFAULT_API_URL = "http://localhost:8080"
DEFAULT_API_PREFIX = "/api/v1"


def _resolve_api_url(value: str | None) -> str:
    base = (value or os.getenv("AURA_API_URL", DEFAULT_API_URL)).rstrip("/")
    prefix = "/" + os.getenv("API_PREFIX", DEFAULT_API_PREFIX).strip("/")
    return f"{base}{prefix}"


def _api_headers() -> dict[str, str]:
    headers: dict[str, str] = {}
    api_key = os.getenv("FLEET_API_KEY")
    if api_key:
        headers["x-api-key"] = api_key
    actor = os.getenv("AURA_ACTOR") or os.getenv("USER")
    if actor:
        headers["x-actor"] = actor
    return headers


def _send(req: urllib.request.Request, timeout: int) -> dict[str, Any]:
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
            if not raw:
                return {}
            return json.loads(raw.decode("utf-8"))
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        detail: str | dict[str, Any] = body
        try:
            detail = json.loads(body)
        except json.JSONDecodeError:
            detail = body or exc.reason
        raise RuntimeError(f"HTTP {exc.code} {detail}") from exc


def _request_json(
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    timeout: int = 30,
) -> dict[str, Any]:
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json", **_api_headers()}
    req = urllib.request.Request(url, data=data, method=method, headers=headers)
    return _send(req, timeout)


def _request_multipart(
    url: str,
    *,
    fields: dict[str, str],
    file_path: Path,
    timeout: int = 300,
) -> dict[str, Any]:
    boundary = uuid.uuid4().hex
    content_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    parts: list[bytes] = []
    for name, value in fields.items():
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    parts.append(
        (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{file_path.name}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode("utf-8")
    )
    parts.append(file_path.read_bytes())
    parts.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    headers = {
        "Content-Type": f"multipart/form-data; boundary={boundary}",
        **_api_headers(),
    }
    req = urllib.request.Request(
        url,
        data=b"".join(parts),
        method="POST",
        headers=headers,
    )
    return _send(req, timeout)


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def cmd_devices(args: argparse.Namespace) -> int:
    url = f"{_resolve_api_url(args.api_url)}/devices"
    if args.fleet:
        url += "?" + urllib.parse.urlencode({"fleet": args.fleet})
    _print_json(_request_json("GET", url))
    return 0


def cmd_register(args: argparse.Namespace) -> int:
    payload: dict[str, Any] = {}
    if args.name:
        payload["name"] = args.name
    if args.fleet_tag:
        payload["fleet_tags"] = args.fleet_tag
    response = _request_json(
        "POST",
        f"{_resolve_api_url(args.api_url)}/devices/register",
        payload=payload,
    )
    _print_json(response)
    return 0


def cmd_claim(args: argparse.Namespace) -> int:
    response = _request_json(
        "POST",
        f"{_resolve_api_url(args.api_url)}/devices",
        payload={"bootstrap_token": args.token},
    )
    _print_json(response)
    return 0


def cmd_provision(args: argparse.Namespace) -> int:
    response = _request_json(
        "POST",
        f"{_resolve_api_url(args.api_url)}/devices/{args.device_id}/provision",
        payload={},
    )
    credentials = response.get("credentials")
    if args.out_dir and credentials:
        out_dir = Path(args.out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        (out_dir / "client.crt").write_text(credentials["client_certificate"])
        key_path = out_dir / "client.key"
        key_path.write_text(credentials["client_key"])
        key_path.chmod(0o600)
        (out_dir / "ca.crt").write_text(credentials["ca_certificate"])
        print(f"Credentials written to {out_dir}", file=sys.stderr)
    elif args.out_dir:
        print("Device was already provisioned; no new credentials", file=sys.stderr)
    _print_json(response)
    return 0


def cmd_firmware(args: argparse.Namespace) -> int:
    _print_json(_request_json("GET", f"{_resolve_api_url(args.api_url)}/firmware"))
    return 0


def cmd_upload(args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.is_file():
        raise FileNotFoundError(f"Firmware file not found: {path}")
    fields = {"version": args.version}
    if args.description:
        fields["description"] = args.description
    if args.checksum:
        fields["checksum"] = args.checksum
    fields["size"] = str(path.stat().st_size)
    response = _request_multipart(
        f"{_resolve_api_url(args.api_url)}/firmware",
        fields=fields,
        file_path=path,
    )
    _print_json(response)
    return 0


def cmd_releases(args: argparse.Namespace) -> int:
    url = f"{_resolve_api_url(args.api_url)}/releases"
    if args.status:
        url += "?" + urllib.parse.urlencode({"status": args.status})
    _print_json(_request_json("GET", url))
    return 0


def cmd_release(args: argparse.Namespace) -> int:
    payload: dict[str, Any] = {
        "firmware_id": args.firmware_id,
        "health_policy": args.policy,
    }
    if args.fleet:
        payload["target_fleet"] = args.fleet
    response = _request_json(
        "POST",
        f"{_resolve_api_url(args.api_url)}/releases",
        payload=payload,
    )
    _print_json(response)
    return 0


def _set_release_status(
    args: argparse.Namespace,
    status: str,
    stage: str | None = None,
) -> int:
    payload: dict[str, Any] = {"status": status}
    if stage:
        payload["stage"] = stage
    response = _request_json(
        "PUT",
        f"{_resolve_api_url(args.api_url)}/releases/{args.release_id}/status",
        payload=payload,
    )
    _print_json(response)
    return 0


def cmd_advance(args: argparse.Namespace) -> int:
    status = "completed" if args.complete else "in_progress"
    return _set_release_status(args, status, args.stage)


def cmd_abort(args: argparse.Namespace) -> int:
    return _set_release_status(args, "rolled_back")


def cmd_status(args: argparse.Namespace) -> int:
    if args.release_id:
        base = _resolve_api_url(args.api_url)
        release = _request_json("GET", f"{base}/releases/{args.release_id}")
        health = _request_json("GET", f"{base}/releases/{args.release_id}/health")
        _print_json({"release": release.get("release"), "health": health})
        return 0
    base = (args.api_url or os.getenv("AURA_API_URL", DEFAULT_API_URL)).rstrip("/")
    _print_json(_request_json("GET", f"{base}/health"))
    return 0


def _uvicorn_cmd(target: str, host: str, port: int, log_level: str) -> list[str]:
    return [
        "uvicorn",
        target,
        "--host",
        host,
        "--port",
        str(port),
        "--log-level",
        log_level,
    ]


def cmd_serve(args: argparse.Namespace) -> int:
    command = _uvicorn_cmd(
        "local_adapter.api_service:app",
        args.host,
        args.port,
        args.log_level,
    )
    if args.dry_run:
        print(" ".join(command))
        return 0
    proc = subprocess.Popen(command)
    try:
        return proc.wait() or 0
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait(timeout=5)
        return 0


def cmd_orchestrate(args: argparse.Namespace) -> int:
    from aura_core.config import get_config
    from aura_core.logging import configure_logging
    from aura_core.releases.runner import tick_all
    from aura_core.services.container import build_services

    config = get_config()
    configure_logging(
        service="aura-orchestrator",
        env=config.env,
        version=os.getenv("AURA_VERSION"),
    )
    services = build_services(config)
    if args.once:
        services.engine.resume_rollbacks()
        ticked = tick_all(services.engine)
        _print_json({"ticked": ticked})
        return 0
    services.runner.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        return 0
    finally:
        services.runner.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aura")
    subparsers = parser.add_subparsers(dest="command")

    api = argparse.ArgumentParser(add_help=False)
    api.add_argument("--api-url", help="Fleet API base URL (default: $AURA_API_URL)")

    devices_parser = subparsers.add_parser("devices", parents=[api], help="List devices")
    devices_parser.add_argument("--fleet")
    devices_parser.set_defaults(func=cmd_devices)

    register_parser = subparsers.add_parser(
        "register", parents=[api], help="Register a device and print its bootstrap token"
    )
    register_parser.add_argument("--name")
    register_parser.add_argument("--fleet-tag", action="append")
    register_parser.set_defaults(func=cmd_register)

    claim_parser = subparsers.add_parser(
        "claim", parents=[api], help="Claim a device with its bootstrap token"
    )
    claim_parser.add_argument("token")
    claim_parser.set_defaults(func=cmd_claim)

    provision_parser = subparsers.add_parser(
        "provision", parents=[api], help="Issue a claimed device its client certificate"
    )
    provision_parser.add_argument("device_id")
    provision_parser.add_argument(
        "--out-dir", help="Write client.crt, client.key and ca.crt here"
    )
    provision_parser.set_defaults(func=cmd_provision)

    firmware_parser = subparsers.add_parser("firmware", parents=[api], help="List firmware")
    firmware_parser.set_defaults(func=cmd_firmware)

    upload_parser = subparsers.add_parser("upload", parents=[api], help="Upload firmware")
    upload_parser.add_argument("--file", required=True)
    upload_parser.add_argument("--version", required=True)
    upload_parser.add_argument("--description")
    upload_parser.add_argument("--checksum")
    upload_parser.set_defaults(func=cmd_upload)

    releases_parser = subparsers.add_parser("releases", parents=[api], help="List releases")
    releases_parser.add_argument(
        "--status", choices=["pending", "in_progress", "completed", "rolled_back"]
    )
    releases_parser.set_defaults(func=cmd_releases)

    release_parser = subparsers.add_parser("release", parents=[api], help="Create a release")
    release_parser.add_argument("--firmware-id", required=True)
    release_parser.add_argument("--fleet")
    release_parser.add_argument(
        "--policy", choices=["auto-rollback", "manual"], default="auto-rollback"
    )
    release_parser.set_defaults(func=cmd_release)

    advance_parser = subparsers.add_parser(
        "advance", parents=[api], help="Start or advance a release to its next stage"
    )
    advance_parser.add_argument("release_id")
    advance_parser.add_argument("--stage", choices=["canary", "staging", "production", "completed"])
    advance_parser.add_argument("--complete", action="store_true")
    advance_parser.set_defaults(func=cmd_advance)

    abort_parser = subparsers.add_parser(
        "abort", parents=[api], help="Abort a release and roll back touched devices"
    )
    abort_parser.add_argument("release_id")
    abort_parser.set_defaults(func=cmd_abort)

    status_parser = subparsers.add_parser(
        "status", parents=[api], help="Check service or release health"
    )
    status_parser.add_argument("--release-id")
    status_parser.set_defaults(func=cmd_status)

    serve_parser = subparsers.add_parser("serve", help="Run the fleet API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.add_argument("--log-level", default="info")
    serve_parser.add_argument("--dry-run", action="store_true", help="Print command only")
    serve_parser.set_defaults(func=cmd_serve)

    orchestrate_parser = subparsers.add_parser(
        "orchestrate", help="Run the rollout runner in the foreground"
    )
    orchestrate_parser.add_argument(
        "--once", action="store_true", help="Tick every active release once and exit"
    )
    orchestrate_parser.set_defaults(func=cmd_orchestrate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 2
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
