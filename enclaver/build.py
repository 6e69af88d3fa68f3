"""Turning an application image into an enclave image file and a release image."""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
import uuid
from collections.abc import Iterator, Sequence
from contextlib import closing, contextmanager
from dataclasses import dataclass
from itertools import takewhile
from pathlib import Path, PurePosixPath
from typing import Any

from enclaver.constants import (
    EIF_FILE_NAME,
    ENCLAVE_CONFIG_DIR,
    ENCLAVE_ODYN_PATH,
    MANIFEST_FILE_NAME,
    RELEASE_BUNDLE_DIR,
)
from enclaver.images import (
    DockerClient,
    FileBuilder,
    ImageFile,
    ImageManager,
    ImageRef,
    LayerBuilder,
    LocalFile,
)
from enclaver.manifest import Manifest, load_manifest
from enclaver.nitro_cli import EIFInfo, KnownIssue

logger = logging.getLogger(__name__)
_nitro_cli_logger = logging.getLogger("nitro-cli.build-eif")

ENCLAVE_OVERLAY_CHOWN = "0:0"
RELEASE_OVERLAY_CHOWN = "0:0"

NITRO_CLI_IMAGE = "registry.edgebit.io/nitro-cli:latest"
ODYN_IMAGE = "registry.edgebit.io/odyn:latest"
ODYN_IMAGE_BINARY_PATH = "/usr/local/bin/odyn"
RELEASE_BASE_IMAGE = "registry.edgebit.io/enclaver-wrapper-base:latest"

_DOCKER_SOCKET = "/var/run/docker.sock"


class BuildError(RuntimeError):
    """Raised when converting an image to an enclave image file fails."""


@dataclass(frozen=True)
class ResolvedSources:
    app: ImageRef
    odyn: ImageRef
    release_base: ImageRef


@dataclass
class _IntermediateBuildResult:
    manifest: Manifest
    resolved_sources: ResolvedSources
    build_dir: Path
    eif_info: EIFInfo


def odyn_command(entrypoint: Sequence[str], cmd: Sequence[str]) -> list[str]:
    """The supervisor invocation that wraps an image's ENTRYPOINT and CMD."""
    return [
        ENCLAVE_ODYN_PATH,
        "--config-dir",
        ENCLAVE_CONFIG_DIR,
        "--",
        *entrypoint,
        *cmd,
    ]


class EnclaveArtifactBuilder:
    """Builds enclave image files and release images from a manifest."""

    def __init__(self, pull_tags: bool = False, docker: DockerClient | None = None) -> None:
        self._pull_tags = pull_tags
        self._docker = docker if docker is not None else DockerClient()
        self._images = ImageManager(self._docker)

    def __enter__(self) -> EnclaveArtifactBuilder:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._docker.close()

    def build_release(self, manifest_path: str) -> tuple[EIFInfo, ImageRef, str]:
        """Build a release image; return the EIF info, the image and its tag."""
        with self._common_build(manifest_path) as ibr:
            eif_path = ibr.build_dir / EIF_FILE_NAME
            release_img = self._package_eif(eif_path, manifest_path, ibr.resolved_sources)
            release_tag = ibr.manifest.target
            self._images.tag_image(release_img, release_tag)
            return ibr.eif_info, release_img, release_tag

    def build_eif_only(self, manifest_path: str, dst_path: str) -> tuple[EIFInfo, Path]:
        """Build only the enclave image file and move it to ``dst_path``."""
        with self._common_build(manifest_path) as ibr:
            shutil.move(str(ibr.build_dir / EIF_FILE_NAME), dst_path)
            return ibr.eif_info, Path(dst_path).resolve()

    @contextmanager
    def _common_build(self, manifest_path: str) -> Iterator[_IntermediateBuildResult]:
        manifest = load_manifest(manifest_path)
        self._analyze_manifest(manifest)
        sources = self._resolve_sources(manifest)
        amended_img = self._amend_source_image(sources, manifest_path)
        logger.info("built intermediate image: %s", amended_img)

        with tempfile.TemporaryDirectory() as build_dir:
            eif_info = self._image_to_eif(amended_img, Path(build_dir), EIF_FILE_NAME)
            yield _IntermediateBuildResult(manifest, sources, Path(build_dir), eif_info)

    def _amend_source_image(self, sources: ResolvedSources, manifest_path: str) -> ImageRef:
        info = self._docker.inspect_image(sources.app.id)
        config: dict[str, Any] = (info.get("Config") if isinstance(info, dict) else None) or {}
        cmd = config.get("Cmd") or []
        entrypoint = config.get("Entrypoint") or []

        logger.debug("appending layer to source image")
        layer = (
            LayerBuilder()
            .append_file(
                FileBuilder(
                    path=str(PurePosixPath(ENCLAVE_CONFIG_DIR) / MANIFEST_FILE_NAME),
                    source=LocalFile(manifest_path),
                    chown=ENCLAVE_OVERLAY_CHOWN,
                )
            )
            .append_file(
                FileBuilder(
                    path=ENCLAVE_ODYN_PATH,
                    source=ImageFile(name=str(sources.odyn), path=ODYN_IMAGE_BINARY_PATH),
                    chown=ENCLAVE_OVERLAY_CHOWN,
                )
            )
            .set_entrypoint(odyn_command(entrypoint, cmd))
        )
        return self._images.append_layer(sources.app, layer)

    def _package_eif(
        self, eif_path: Path, manifest_path: str, sources: ResolvedSources
    ) -> ImageRef:
        logger.info("packaging EIF into release image")
        logger.debug("EIF file: %s", eif_path)
        bundle = PurePosixPath(RELEASE_BUNDLE_DIR)
        layer = (
            LayerBuilder()
            .append_file(
                FileBuilder(
                    path=str(bundle / MANIFEST_FILE_NAME),
                    source=LocalFile(manifest_path),
                    chown=RELEASE_OVERLAY_CHOWN,
                )
            )
            .append_file(
                FileBuilder(
                    path=str(bundle / EIF_FILE_NAME),
                    source=LocalFile(eif_path),
                    chown=RELEASE_OVERLAY_CHOWN,
                )
            )
        )
        return self._images.append_layer(sources.release_base, layer)

    def _image_to_eif(self, source_img: ImageRef, build_dir: Path, eif_name: str) -> EIFInfo:
        # The conversion tool insists on pulling by name, so give the image a random tag.
        img_tag = str(uuid.uuid4())
        self._images.tag_image(source_img, img_tag)
        logger.debug("tagged intermediate image: %s", img_tag)

        nitro_cli = self._resolve_external_source_image(NITRO_CLI_IMAGE)
        logger.debug("using nitro-cli image: %s", nitro_cli)

        container_id = self._docker.create_container(
            {
                "Image": nitro_cli.id,
                "Cmd": ["build-enclave", "--docker-uri", img_tag, "--output-file", eif_name],
                "AttachStderr": True,
                "AttachStdout": True,
                "HostConfig": {
                    "Mounts": [
                        {"Type": "bind", "Source": _DOCKER_SOCKET, "Target": _DOCKER_SOCKET},
                        {"Type": "bind", "Source": str(build_dir), "Target": "/build"},
                    ]
                },
            }
        )
        logger.info("starting nitro-cli build-eif in container: %s", container_id)
        self._docker.start_container(container_id)

        detected_issue = None
        with closing(self._docker.logs(container_id, stderr=True, follow=True)) as frames:
            for _, payload in takewhile(lambda frame: frame[0] == "stderr", frames):
                line = payload.decode("utf-8", errors="replace")
                if detected_issue is None:
                    detected_issue = KnownIssue.detect(line)
                _nitro_cli_logger.info("%s", line.rstrip())

        if detected_issue is not None:
            logger.warning(
                "detected known nitro-cli issue:\n%s", detected_issue.helpful_message()
            )

        if self._docker.wait_container(container_id) != 0:
            raise BuildError("non-zero exit code from nitro-cli")

        output = bytearray()
        with closing(self._docker.logs(container_id, stdout=True)) as frames:
            for _, payload in takewhile(lambda frame: frame[0] == "stdout", frames):
                output += payload

        self._docker.remove_container(container_id)
        self._docker.remove_image(img_tag)

        try:
            return EIFInfo.from_json(json.loads(output))
        except ValueError as err:
            raise BuildError(f"invalid output from nitro-cli: {err}") from err

    @staticmethod
    def _analyze_manifest(manifest: Manifest) -> None:
        if manifest.ingress is None:
            logger.info(
                "no ingress specified in manifest; there will be no way to connect to this enclave"
            )
        if manifest.egress is None:
            logger.info(
                "no egress specified in manifest; this enclave will have outbound network access"
            )

    def _resolve_external_source_image(self, image_name: str) -> ImageRef:
        # Tags of external images belong to the user; only re-pull when asked to.
        if self._pull_tags:
            return self._images.pull_image(image_name)
        return self._images.find_or_pull(image_name)

    def _resolve_internal_source_image(self, name_override: str | None, default: str) -> ImageRef:
        if name_override is not None:
            return self._images.find_or_pull(name_override)
        return self._images.pull_image(default)

    def _resolve_sources(self, manifest: Manifest) -> ResolvedSources:
        app = self._resolve_external_source_image(manifest.sources.app)
        logger.info("using app image: %s", app)

        odyn = self._resolve_internal_source_image(manifest.sources.supervisor, ODYN_IMAGE)
        if manifest.sources.supervisor is None:
            logger.debug("no supervisor image specified in manifest; using default: %s", odyn)
        else:
            logger.info("using supervisor image: %s", odyn)

        release_base = self._resolve_internal_source_image(
            manifest.sources.wrapper, RELEASE_BASE_IMAGE
        )
        if manifest.sources.wrapper is None:
            logger.debug(
                "no wrapper base image specified in manifest; using default: %s", release_base
            )
        else:
            logger.info("using wrapper base image: %s", release_base)

        return ResolvedSources(app=app, odyn=odyn, release_base=release_base)