"""Command line for packaging and running applications in Nitro Enclaves."""

from __future__ import annotations

import argparse
import json
import logging
import subprocess
import sys
from collections.abc import Sequence

import httpx

from enclaver.build import BuildError, EnclaveArtifactBuilder
from enclaver.constants import MANIFEST_FILE_NAME
from enclaver.images import DockerError
from enclaver.manifest import ManifestError, load_manifest
from enclaver.nitro_cli import EIFInfo

logger = logging.getLogger(__name__)

NITRO_ENCLAVES_DEVICE = "/dev/nitro_enclaves:/dev/nitro_enclaves:rw"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enclaver", description="Package and run applications in Nitro Enclaves."
    )
    commands = parser.add_subparsers(dest="subcommand", required=True)

    build = commands.add_parser(
        "build",
        help="Package a Docker image into a self-executing Enclaver container image.",
    )
    build.add_argument(
        "-f",
        "--file",
        dest="manifest_file",
        default=MANIFEST_FILE_NAME,
        help="Path to the Enclaver manifest file to build from.",
    )
    build.add_argument("--eif-only", dest="eif_file", default=None, help=argparse.SUPPRESS)
    build.add_argument(
        "--pull",
        dest="force_pull",
        action="store_true",
        help="Pull any Docker images this depends on before building.",
    )

    run = commands.add_parser(
        "run",
        help="Run a packaged Enclaver container image without typing long Docker commands.",
        description=(
            "Run a pre-existing Enclaver image in the local Docker daemon. This is "
            f"equivalent to running the image with Docker and passing "
            f"'--device={NITRO_ENCLAVES_DEVICE}'."
        ),
    )
    run.add_argument(
        "-f",
        "--file",
        dest="manifest_file",
        default=None,
        help="Enclaver manifest file in which to look for an image name.",
    )
    run.add_argument(
        "image_name",
        nargs="?",
        metavar="image",
        default=None,
        help="Name of a pre-existing Enclaver image to run.",
    )
    run.add_argument(
        "-p",
        "--publish",
        dest="port_forwards",
        action="append",
        default=[],
        help="Port to expose on the host machine, for example: 8080:80.",
    )
    return parser


def _print_eif_info(eif_info: EIFInfo) -> None:
    print("EIF Info:")
    print(json.dumps(eif_info.to_json(), indent=2))


def _build(args: argparse.Namespace) -> None:
    with EnclaveArtifactBuilder(args.force_pull) as builder:
        if args.eif_file is None:
            eif_info, release_img, tag = builder.build_release(args.manifest_file)
            print(f"Built Release Image: {release_img} ({tag})")
        else:
            eif_info, eif_path = builder.build_eif_only(args.manifest_file, args.eif_file)
            print(f"Built EIF: {eif_path}")
    _print_eif_info(eif_info)


def _resolve_image_name(manifest_file: str | None, image_name: str | None) -> str:
    if image_name is not None:
        if manifest_file is not None:
            raise ValueError("both an image name and a manifest file were specified")
        return image_name
    return load_manifest(manifest_file or MANIFEST_FILE_NAME).target


def _run(args: argparse.Namespace) -> None:
    image_name = _resolve_image_name(args.manifest_file, args.image_name)

    command = ["docker", "run", "--rm", f"--device={NITRO_ENCLAVES_DEVICE}"]
    for forward in args.port_forwards:
        command += ["-p", forward]
    command.append(image_name)

    try:
        proc = subprocess.Popen(command)
    except OSError as err:
        logger.error("error running enclave: %s", err)
        return

    try:
        code = proc.wait()
    except KeyboardInterrupt:
        logger.debug("signal received, cleaning up...")
        proc.terminate()
        proc.wait()
        return

    if code == 0:
        logger.debug("enclave exited successfully")
    else:
        logger.error("error running enclave: container exited with status %d", code)


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)

    try:
        if args.subcommand == "build":
            _build(args)
        else:
            _run(args)
    except (
        ManifestError,
        BuildError,
        DockerError,
        httpx.HTTPError,
        OSError,
        ValueError,
    ) as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())