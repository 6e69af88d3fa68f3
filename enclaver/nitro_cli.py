"""Driving the enclave command-line tool and decoding what it prints."""

from __future__ import annotations

import enum
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import IO, Any, Mapping, Protocol

logger = logging.getLogger(__name__)


class NitroCLIError(RuntimeError):
    """Raised when the enclave tool cannot be run or reports a failure."""


def _field(data: Mapping[str, Any], key: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"missing field `{key}`") from None


@dataclass(frozen=True)
class EIFMeasurements:
    pcr0: str
    pcr1: str
    pcr2: str


@dataclass(frozen=True)
class EIFInfo:
    measurements: EIFMeasurements

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> EIFInfo:
        raw = _field(data, "Measurements")
        return cls(
            EIFMeasurements(
                pcr0=_field(raw, "PCR0"),
                pcr1=_field(raw, "PCR1"),
                pcr2=_field(raw, "PCR2"),
            )
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "Measurements": {
                "PCR0": self.measurements.pcr0,
                "PCR1": self.measurements.pcr1,
                "PCR2": self.measurements.pcr2,
            }
        }


@dataclass(frozen=True)
class EnclaveInfo:
    name: str
    id: str
    process_id: int
    cid: int

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> EnclaveInfo:
        return cls(
            name=_field(data, "EnclaveName"),
            id=_field(data, "EnclaveID"),
            process_id=_field(data, "ProcessID"),
            cid=_field(data, "EnclaveCID"),
        )


@dataclass(frozen=True)
class EnclaveTerminationStatus:
    id: str
    terminated: bool

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> EnclaveTerminationStatus:
        return cls(id=_field(data, "EnclaveID"), terminated=_field(data, "Terminated"))


class _NitroCLIArgs(Protocol):
    def to_args(self) -> list[str]: ...


@dataclass
class RunEnclaveArgs:
    cpu_count: int
    memory_mb: int
    eif_path: str | os.PathLike[str]
    cid: int | None = None
    debug_mode: bool = False

    def to_args(self) -> list[str]:
        if self.cpu_count < 1:
            raise ValueError(f"at least 1 CPU is required, got: {self.cpu_count}")
        if self.memory_mb < 64:
            raise ValueError(
                f"at least 64MiB of memory are required, got: {self.memory_mb}"
            )

        args = [
            "run-enclave",
            "--cpu-count",
            str(self.cpu_count),
            "--memory",
            str(self.memory_mb),
            "--eif-path",
            os.fspath(self.eif_path),
        ]
        if self.cid is not None:
            args += ["--enclave-cid", str(self.cid)]
        if self.debug_mode:
            args.append("--debug-mode")
        return args


@dataclass
class DescribeEnclavesArgs:
    def to_args(self) -> list[str]:
        return ["describe-enclaves"]


@dataclass
class TerminateEnclaveArgs:
    enclave_id: str

    def to_args(self) -> list[str]:
        return ["terminate-enclave", "--enclave-id", self.enclave_id]


@dataclass
class AttachConsoleArgs:
    enclave_id: str

    def to_args(self) -> list[str]:
        return ["console", "--enclave-id", self.enclave_id]


@dataclass
class DescribeEifArgs:
    eif_path: str | os.PathLike[str]

    def to_args(self) -> list[str]:
        return ["describe-eif", "--eif-path", os.fspath(self.eif_path)]


class NitroCLI:
    """Runs the enclave tool and parses its JSON output."""

    def __init__(self, program: str = "nitro-cli") -> None:
        self.program = program

    def run_and_deserialize_output(self, args: _NitroCLIArgs) -> Any:
        cmd_args = args.to_args()
        logger.debug("executing nitro-cli with args: %r", cmd_args)

        try:
            result = subprocess.run(
                [self.program, *cmd_args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=False,
            )
        except OSError as err:
            raise NitroCLIError(f"failed to execute nitro-cli: {err}") from err

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace")
            raise NitroCLIError(f"nitro-cli failed: {stderr}")

        try:
            return json.loads(result.stdout)
        except ValueError as err:
            raise NitroCLIError(f"invalid output from nitro-cli: {err}") from err

    def run_enclave(self, args: RunEnclaveArgs) -> EnclaveInfo:
        return EnclaveInfo.from_json(self.run_and_deserialize_output(args))

    def describe_enclaves(self) -> list[EnclaveInfo]:
        output = self.run_and_deserialize_output(DescribeEnclavesArgs())
        return [EnclaveInfo.from_json(item) for item in output]

    def terminate_enclave(self, enclave_id: str) -> None:
        status = EnclaveTerminationStatus.from_json(
            self.run_and_deserialize_output(TerminateEnclaveArgs(enclave_id))
        )
        if not status.terminated:
            raise NitroCLIError("nitro-cli failed to terminate enclave")

    def describe_eif(self, eif_path: str | os.PathLike[str]) -> EIFInfo:
        return EIFInfo.from_json(self.run_and_deserialize_output(DescribeEifArgs(eif_path)))

    def console(self, enclave_id: str) -> IO[bytes]:
        """Attach to an enclave console and return the stream of its output."""
        cmd_args = AttachConsoleArgs(enclave_id).to_args()
        logger.debug("executing nitro-cli with args: %r", cmd_args)
        try:
            child = subprocess.Popen(
                [self.program, *cmd_args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as err:
            raise NitroCLIError(f"failed to execute nitro-cli: {err}") from err
        assert child.stdout is not None
        return child.stdout


_RAM_ISSUE_MARKER = r'rootfs/tmp\n  cmd\n  env\nCreate outputs:\n"'
_DISK_ISSUE_MARKER = "no space left on device"


class KnownIssue(enum.Enum):
    IMAGE_TOO_LARGE_FOR_RAM = "image_too_large_for_ram"
    OUT_OF_DISK_SPACE = "out_of_disk_space"

    def helpful_message(self) -> str:
        if self is KnownIssue.IMAGE_TOO_LARGE_FOR_RAM:
            return (
                "This often means that insufficient memory was available to convert the source\n"
                "image to an EIF. Consider shrinking the image, or re-running this command on a\n"
                "machine with more memory available."
            )
        return (
            "Not enough disk space was available to convert the source image to an EIF. Note\n"
            "that enclaver output images contain EIF files, which are potentially very\n"
            "large. If you have been doing a lot of enclaver builds, consider cleaning up\n"
            "old images in your local Docker engine."
        )

    @classmethod
    def detect(cls, line: str) -> KnownIssue | None:
        if _RAM_ISSUE_MARKER in line:
            return cls.IMAGE_TOO_LARGE_FOR_RAM
        if _DISK_ISSUE_MARKER in line:
            return cls.OUT_OF_DISK_SPACE
        return None