"""Inspecting, pulling, tagging and extending container images through the Docker daemon."""

from __future__ import annotations

import codecs
import io
import json
import logging
import os
import shutil
import struct
import tarfile
import tempfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO

import httpx

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"

_LOG_STREAMS = {0: "stdin", 1: "stdout", 2: "stderr"}
_FRAME_HEADER = struct.Struct(">BxxxI")


class DockerError(RuntimeError):
    """Raised when the Docker daemon rejects a request or reports a failure."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _default_socket_path() -> str:
    host = os.environ.get("DOCKER_HOST", "")
    if host.startswith("unix://"):
        return host[len("unix://") :]
    return DEFAULT_DOCKER_SOCKET


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    resp.read()
    try:
        payload = resp.json()
        message = payload.get("message", resp.text) if isinstance(payload, dict) else resp.text
    except ValueError:
        message = resp.text
    raise DockerError(
        f"Docker responded with status code {resp.status_code}: {message}",
        resp.status_code,
    )


def _json_objects(chunks: Iterable[bytes]) -> Iterator[Any]:
    """Decode a stream of concatenated JSON values, however it is chunked."""
    decoder = json.JSONDecoder()
    text = codecs.getincrementaldecoder("utf-8")()
    buf = ""
    for chunk in chunks:
        buf += text.decode(chunk)
        while True:
            buf = buf.lstrip()
            if not buf:
                break
            try:
                value, end = decoder.raw_decode(buf)
            except ValueError:
                break
            buf = buf[end:]
            yield value
    buf += text.decode(b"", final=True)
    if buf.strip():
        raise DockerError("truncated JSON stream from daemon")


def _demux(chunks: Iterable[bytes]) -> Iterator[tuple[str, bytes]]:
    """Split Docker's multiplexed log stream into (stream name, payload) frames."""
    buf = bytearray()
    for chunk in chunks:
        buf += chunk
        while len(buf) >= _FRAME_HEADER.size:
            stream, size = _FRAME_HEADER.unpack_from(buf)
            end = _FRAME_HEADER.size + size
            if len(buf) < end:
                break
            yield _LOG_STREAMS.get(stream, "stdout"), bytes(buf[_FRAME_HEADER.size : end])
            del buf[:end]


def _flag(value: bool) -> str:
    return "true" if value else "false"


class DockerClient:
    """A minimal client for the Docker Engine HTTP API."""

    def __init__(
        self,
        socket_path: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if transport is None:
            transport = httpx.HTTPTransport(uds=socket_path or _default_socket_path())
        self._http = httpx.Client(transport=transport, base_url="http://docker", timeout=None)

    def __enter__(self) -> DockerClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        resp = self._http.request(method, path, **kwargs)
        _raise_for_status(resp)
        return resp

    def _stream(self, method: str, path: str, **kwargs: Any) -> Iterator[bytes]:
        with self._http.stream(method, path, **kwargs) as resp:
            _raise_for_status(resp)
            yield from resp.iter_bytes()

    def inspect_image(self, name: str) -> dict[str, Any]:
        return self._request("GET", f"/images/{name}/json").json()

    def create_image(self, from_image: str) -> Iterator[dict[str, Any]]:
        """Pull an image, yielding the daemon's progress reports as they arrive."""
        for info in _json_objects(
            self._stream("POST", "/images/create", params={"fromImage": from_image})
        ):
            if isinstance(info, dict) and info.get("error"):
                raise DockerError(str(info["error"]))
            yield info

    def build_image(self, context: bytes) -> list[dict[str, Any]]:
        """Build from a tarred context holding a Dockerfile; return every build report."""
        return list(
            _json_objects(
                self._stream(
                    "POST",
                    "/build",
                    params={"dockerfile": "Dockerfile", "rm": "true"},
                    content=context,
                    headers={"Content-Type": "application/x-tar"},
                )
            )
        )

    def tag_image(self, name: str, repo: str) -> None:
        self._request("POST", f"/images/{name}/tag", params={"repo": repo})

    def create_container(self, config: dict[str, Any]) -> str:
        return self._request("POST", "/containers/create", json=config).json()["Id"]

    def start_container(self, container_id: str) -> None:
        self._request("POST", f"/containers/{container_id}/start")

    def logs(
        self,
        container_id: str,
        stdout: bool = False,
        stderr: bool = False,
        follow: bool = False,
    ) -> Iterator[tuple[str, bytes]]:
        """Yield (stream name, bytes) frames of a container's output."""
        params = {"stdout": _flag(stdout), "stderr": _flag(stderr), "follow": _flag(follow)}
        yield from _demux(self._stream("GET", f"/containers/{container_id}/logs", params=params))

    def wait_container(self, container_id: str) -> int:
        payload = self._request("POST", f"/containers/{container_id}/wait").json()
        if not isinstance(payload, dict) or "StatusCode" not in payload:
            raise DockerError("missing wait response from daemon")
        return payload["StatusCode"]

    def remove_container(self, container_id: str) -> None:
        self._request("DELETE", f"/containers/{container_id}")

    def remove_image(self, name: str) -> None:
        self._request("DELETE", f"/images/{name}")


@dataclass(frozen=True)
class ImageRef:
    """A specific, immutable image identified by its ID."""

    id: str

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class LocalFile:
    """A file taken from the local filesystem."""

    path: str | os.PathLike[str]


@dataclass(frozen=True)
class ImageFile:
    """A file taken from another image."""

    name: str
    path: str | os.PathLike[str]


@dataclass
class FileBuilder:
    """A file to place at ``path`` in a new image layer."""

    path: str | os.PathLike[str]
    source: LocalFile | ImageFile
    chown: str

    def realize(self) -> str:
        """Return the Dockerfile COPY line that adds this file."""
        dst_path = os.fspath(self.path)
        line = f"COPY --chown={self.chown}"
        if isinstance(self.source, LocalFile):
            line += f" files/{dst_path}"
        else:
            line += f" --from={self.source.name} {os.fspath(self.source.path)}"
        return f"{line} {dst_path}\n"


@dataclass
class LayerBuilder:
    """Describes a layer to append to an image: files and an optional entrypoint."""

    files: list[FileBuilder] = field(default_factory=list)
    entrypoint: list[str] | None = None

    def append_file(self, file: FileBuilder) -> LayerBuilder:
        self.files.append(file)
        return self

    def set_entrypoint(self, entrypoint: list[str]) -> LayerBuilder:
        self.entrypoint = list(entrypoint)
        return self

    def realize(self, source_image_name: str, dst: BinaryIO) -> None:
        """Write a tarred Docker build context that builds this layer to ``dst``."""
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            logger.debug("realizing Docker build env to temp directory: %s", root)
            local_files = root / "files"
            local_files.mkdir()

            lines = [f"FROM {source_image_name}\n\n"]
            for file in self.files:
                logger.debug("realizing file: %r", file)
                if isinstance(file.source, LocalFile):
                    dst_path = PurePosixPath(os.fspath(file.path))
                    if not dst_path.is_absolute():
                        raise ValueError(f"{dst_path} is not an absolute path")
                    target = local_files.joinpath(*dst_path.parts[1:])
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy(file.source.path, target)
                lines.append(file.realize())

            if self.entrypoint is not None:
                ep = json.dumps(self.entrypoint, separators=(",", ":"), ensure_ascii=False)
                logger.debug("writing ENTRYPOINT: %s", ep)
                lines.append(f"ENTRYPOINT {ep}\n")

            (root / "Dockerfile").write_text("".join(lines), encoding="utf-8")

            with tarfile.open(fileobj=dst, mode="w|") as tar:
                tar.add(root, arcname=".")


class ImageManager:
    """Resolves, pulls, tags and extends images."""

    def __init__(self, docker: DockerClient | None = None) -> None:
        self._docker = docker if docker is not None else DockerClient()

    def image(self, name: str) -> ImageRef:
        """Resolve a name-like string to a specific image."""
        logger.debug("attempting to resolve image: %s", name)
        try:
            info = self._docker.inspect_image(name)
        except DockerError as err:
            raise DockerError(f"inspecting image {name}: {err}", err.status_code) from err
        image_id = info.get("Id") if isinstance(info, dict) else None
        if not image_id:
            raise DockerError("missing image ID in image_inspect result")
        return ImageRef(image_id)

    def find_or_pull(self, image_name: str) -> ImageRef:
        """Use a local image of that name if there is one, else pull it."""
        logger.debug("looking for image %s", image_name)
        try:
            img = self.image(image_name)
        except DockerError as err:
            if err.status_code != 404:
                raise
            logger.debug("local image not found, attempting to pull %s", image_name)
            return self.pull_image(image_name)
        logger.debug("found local image %s", image_name)
        return img

    def pull_image(self, image_name: str) -> ImageRef:
        logger.debug("fetching image: %s", image_name)
        for info in self._docker.create_image(image_name):
            if isinstance(info, dict) and info.get("id") and info.get("status"):
                logger.debug("%s: %s", info["id"], info["status"])
        return self.image(image_name)

    def append_layer(self, img: ImageRef, layer: LayerBuilder) -> ImageRef:
        """Build ``layer`` on top of ``img`` and return the resulting image."""
        context = io.BytesIO()
        layer.realize(img.id, context)
        for info in self._docker.build_image(context.getvalue()):
            if not isinstance(info, dict):
                continue
            aux = info.get("aux")
            if isinstance(aux, dict) and aux.get("ID"):
                return self.image(aux["ID"])
            if info.get("error"):
                raise DockerError(f"build error appending layer: {info['error']}")
        raise DockerError("missing image ID")

    def tag_image(self, img: ImageRef, tag: str) -> None:
        self._docker.tag_image(img.id, tag)