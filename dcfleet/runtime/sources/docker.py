"""Docker Engine API client.

Talks to the daemon over its unix socket with ``httpx``; no docker CLI
involved.  One client is shared by all concurrent calls of a command: the
engine serialises conflicting operations itself, so no locking is needed
here.

Record parsing is strict per record and lenient per listing: a malformed
container raises ``ParseFailureError`` inside the parser, and the listing
logs and skips it.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import anyio
import httpx
from loguru import logger

from dcfleet.runtime.errors import (
    DockerAPIError,
    EngineUnavailableError,
    NotFoundError,
    ParseFailureError,
    SubprocessFailedError,
)
from dcfleet.runtime.models.enums import Status, StatsMode
from dcfleet.runtime.models.workspace import (
    COMPOSE_SERVICE_LABEL,
    LOCAL_FOLDER_LABEL,
    PROJECT_LABEL,
    WORKSPACE_LABEL,
    ContainerDetails,
    ContainerInfo,
    ExecDetails,
    ForwardSidecar,
    Stats,
    StatsSample,
    WorktreeKey,
)

DEFAULT_SOCKET = "/var/run/docker.sock"

# ---------------------------------------------------------------------------
# Record parsing
# ---------------------------------------------------------------------------


def _public_ports(raw: dict[str, Any]) -> frozenset[int]:
    return frozenset(int(p["PublicPort"]) for p in raw.get("Ports") or [] if p.get("PublicPort"))


def parse_container(raw: dict[str, Any]) -> ContainerInfo | None:
    """Build a ``ContainerInfo`` from a ``/containers/json`` entry.

    Returns ``None`` for containers without a worktree-path label.
    """
    try:
        labels: dict[str, str] = raw.get("Labels") or {}
        folder = labels.get(LOCAL_FOLDER_LABEL)
        if not folder:
            return None
        created = raw.get("Created")
        return ContainerInfo(
            id=raw["Id"],
            state=Status.from_engine_state(raw["State"]),
            key=WorktreeKey.from_label(folder),
            project=labels.get(PROJECT_LABEL),
            service=labels.get(COMPOSE_SERVICE_LABEL),
            created=datetime.fromtimestamp(created, tz=UTC) if created else None,
            published_ports=_public_ports(raw),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        msg = f"malformed container record {raw.get('Id', '?') if isinstance(raw, dict) else '?'}: {exc!r}"
        raise ParseFailureError(msg) from exc


def parse_stats(raw: dict[str, Any]) -> StatsSample:
    """Build a ``StatsSample`` from a ``/containers/{id}/stats`` response.

    Memory excludes page cache, like ``docker stats`` does.
    """
    try:
        memory = raw.get("memory_stats") or {}
        usage = int(memory.get("usage") or 0)
        mem_detail = memory.get("stats") or {}
        cache = int(mem_detail.get("inactive_file", mem_detail.get("total_inactive_file", 0)) or 0)

        cpu = raw.get("cpu_stats") or {}
        cpu_usage = cpu.get("cpu_usage") or {}
        total = cpu_usage.get("total_usage")
        system = cpu.get("system_cpu_usage")
        online = cpu.get("online_cpus") or len(cpu_usage.get("percpu_usage") or []) or 1

        return StatsSample(
            memory_usage_bytes=max(usage - cache, 0),
            cpu_total=int(total) if total is not None else None,
            system_cpu=int(system) if system is not None else None,
            online_cpus=int(online),
        )
    except (TypeError, ValueError, AttributeError) as exc:
        msg = f"malformed stats record: {exc!r}"
        raise ParseFailureError(msg) from exc


def cpu_percent(before: StatsSample, after: StatsSample) -> float:
    """CPU percent between two samples, scaled by online CPU count."""
    if None in (before.cpu_total, after.cpu_total, before.system_cpu, after.system_cpu):
        return 0.0
    cpu_delta = after.cpu_total - before.cpu_total  # type: ignore[operator]
    system_delta = after.system_cpu - before.system_cpu  # type: ignore[operator]
    if system_delta <= 0 or cpu_delta < 0:
        return 0.0
    return cpu_delta / system_delta * after.online_cpus * 100.0


def parse_sidecar(raw: dict[str, Any]) -> ForwardSidecar | None:
    labels: dict[str, str] = raw.get("Labels") or {}
    workspace = labels.get(WORKSPACE_LABEL)
    if not workspace:
        return None
    try:
        return ForwardSidecar(
            id=raw["Id"],
            workspace=workspace,
            project=labels.get(PROJECT_LABEL),
            ports=_public_ports(raw),
        )
    except (KeyError, TypeError, ValueError) as exc:
        msg = f"malformed sidecar record: {exc!r}"
        raise ParseFailureError(msg) from exc


def split_image(image: str) -> tuple[str, str]:
    """Split an image reference into the ``fromImage`` and ``tag`` of a pull.

    Only a ``:`` after the last ``/`` starts a tag, so a registry port is
    kept in the name.  Digest references are pulled as they are.
    """
    if "@" in image:
        return image, ""
    name, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return name, tag


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class DockerClient:
    """Async Docker Engine API client implementing ``ContainerSource``.

    Use as an async context manager, or call :meth:`aclose` when done.
    Pass *transport* to substitute ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET,
        *,
        timeout: float = 30.0,
        stats_interval: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._stats_interval = stats_interval
        self._client = httpx.AsyncClient(
            transport=transport or httpx.AsyncHTTPTransport(uds=socket_path),
            base_url="http://docker",
            timeout=timeout,
        )

    async def __aenter__(self) -> DockerClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- Transport -------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        timeout: Any = httpx.USE_CLIENT_DEFAULT,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, params=params, json=body, timeout=timeout)
        except httpx.TransportError as exc:
            raise EngineUnavailableError(str(exc) or type(exc).__name__) from exc

        if resp.status_code == 404:
            raise NotFoundError(_error_message(resp))
        if resp.status_code >= 400:
            raise DockerAPIError(resp.status_code, _error_message(resp))
        return resp

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = await self._send(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            msg = f"invalid JSON from {method} {path}"
            raise ParseFailureError(msg) from exc

    # -- Daemon ----------------------------------------------------------------

    async def ping(self) -> None:
        """Raise ``EngineUnavailableError`` unless the daemon answers."""
        try:
            await self._send("GET", "/_ping")
        except DockerAPIError as exc:
            raise EngineUnavailableError(str(exc)) from exc

    # -- Discovery -------------------------------------------------------------

    async def _list_raw(self, labels: list[str]) -> list[dict[str, Any]]:
        params = {"all": "true", "filters": json.dumps({"label": labels})}
        raw = await self._json("GET", "/containers/json", params=params)
        if not isinstance(raw, list):
            msg = "container listing is not a JSON array"
            raise ParseFailureError(msg)
        return raw

    async def list_containers(self, labels: list[str]) -> list[ContainerInfo]:
        containers = []
        for entry in await self._list_raw(labels):
            try:
                info = parse_container(entry)
            except ParseFailureError as exc:
                logger.warning("Skipping container: {}", exc)
                continue
            if info is not None:
                containers.append(info)
        return containers

    async def list_sidecars(self, labels: list[str]) -> list[ForwardSidecar]:
        sidecars = []
        for entry in await self._list_raw(labels):
            try:
                sidecar = parse_sidecar(entry)
            except ParseFailureError as exc:
                logger.warning("Skipping sidecar: {}", exc)
                continue
            if sidecar is not None:
                sidecars.append(sidecar)
        return sidecars

    async def forwarded_ports(self, labels: list[str]) -> dict[str, set[int]]:
        ports: dict[str, set[int]] = {}
        for sidecar in await self.list_sidecars(labels):
            ports.setdefault(sidecar.workspace, set()).update(sidecar.ports)
        return ports

    # -- Enrichment ------------------------------------------------------------

    async def inspect_container(self, container_id: str) -> ContainerDetails:
        raw = await self._json("GET", f"/containers/{container_id}/json")
        try:
            networks = (raw.get("NetworkSettings") or {}).get("Networks") or {}
            return ContainerDetails(
                networks={name: (ep or {}).get("IPAddress") or "" for name, ep in networks.items()},
                exec_ids=raw.get("ExecIDs") or [],
            )
        except (TypeError, ValueError, AttributeError) as exc:
            msg = f"malformed inspect record for {container_id}: {exc!r}"
            raise ParseFailureError(msg) from exc

    async def inspect_exec(self, exec_id: str) -> ExecDetails:
        raw = await self._json("GET", f"/exec/{exec_id}/json")
        try:
            process = raw["ProcessConfig"]
            return ExecDetails(
                running=raw["Running"],
                pid=raw["Pid"],
                entrypoint=process["entrypoint"],
                arguments=process.get("arguments") or [],
            )
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"malformed exec record {exec_id}: {exc!r}"
            raise ParseFailureError(msg) from exc

    async def _stats_sample(self, container_id: str) -> StatsSample:
        params = {"stream": "false", "one-shot": "true"}
        return parse_stats(await self._json("GET", f"/containers/{container_id}/stats", params=params))

    async def sample_stats(self, container_id: str, mode: StatsMode = StatsMode.FAST) -> Stats:
        first = await self._stats_sample(container_id)
        if mode is StatsMode.FAST:
            return Stats(ram=first.memory_usage_bytes)

        await anyio.sleep(self._stats_interval)
        second = await self._stats_sample(container_id)
        return Stats(ram=second.memory_usage_bytes, cpu=cpu_percent(first, second))

    # -- Mutation --------------------------------------------------------------

    async def remove_container(self, container_id: str, *, force: bool = True) -> None:
        await self._send("DELETE", f"/containers/{container_id}", params={"force": str(force).lower()})

    async def ensure_image(self, image: str) -> None:
        """Pull *image* unless it is already present."""
        try:
            await self._send("GET", f"/images/{image}/json")
        except NotFoundError:
            name, tag = split_image(image)
            params = {"fromImage": name}
            if tag:
                params["tag"] = tag
            logger.info("Pulling image {}", image)
            await self._send("POST", "/images/create", params=params, timeout=None)

    async def run_to_completion(self, *, image: str, cmd: list[str], binds: list[str]) -> None:
        """Run a throwaway container and wait for it; the container is always removed.

        Raises ``SubprocessFailedError`` when it exits with a non-zero status.
        """
        await self.ensure_image(image)
        created = await self._json(
            "POST", "/containers/create", body={"Image": image, "Cmd": cmd, "HostConfig": {"Binds": binds}}
        )
        container_id = created["Id"]
        try:
            await self._send("POST", f"/containers/{container_id}/start")
            result = await self._json("POST", f"/containers/{container_id}/wait", timeout=None)
            code = result.get("StatusCode", 0)
            if code != 0:
                raise SubprocessFailedError(cmd, code)
        finally:
            await self.remove_container(container_id, force=True)

    async def create_forward_sidecar(
        self,
        *,
        image: str,
        network: str,
        target_ip: str,
        container_port: int,
        host_port: int,
        labels: dict[str, str],
    ) -> str:
        """Start a socat relay publishing ``127.0.0.1:host_port`` to ``target_ip:container_port``."""
        await self.ensure_image(image)
        port_key = f"{host_port}/tcp"
        body = {
            "Image": image,
            "Cmd": [f"TCP-LISTEN:{host_port},fork,reuseaddr", f"TCP:{target_ip}:{container_port}"],
            "Labels": labels,
            "ExposedPorts": {port_key: {}},
            "HostConfig": {
                "NetworkMode": network,
                "PortBindings": {port_key: [{"HostIp": "127.0.0.1", "HostPort": str(host_port)}]},
                "RestartPolicy": {"Name": "unless-stopped"},
            },
        }
        created = await self._json("POST", "/containers/create", body=body)
        sidecar_id = created["Id"]
        await self._send("POST", f"/containers/{sidecar_id}/start")
        return sidecar_id


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("message") or resp.text
    except ValueError:
        return resp.text or resp.reason_phrase
