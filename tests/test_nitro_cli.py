import os
import stat
import sys

import pytest

from enclaver.nitro_cli import (
    AttachConsoleArgs,
    DescribeEifArgs,
    DescribeEnclavesArgs,
    EIFInfo,
    EIFMeasurements,
    EnclaveInfo,
    KnownIssue,
    NitroCLI,
    NitroCLIError,
    RunEnclaveArgs,
    TerminateEnclaveArgs,
)

FAKE_TOOL_BODY = """
import json
import sys

cmd = sys.argv[1]
if cmd == "describe-enclaves":
    print(json.dumps([{"EnclaveName": "app", "EnclaveID": "i-abc-enc1",
                       "ProcessID": 42, "EnclaveCID": 16}]))
elif cmd == "terminate-enclave":
    print(json.dumps({"EnclaveID": sys.argv[3], "Terminated": sys.argv[3] == "good"}))
elif cmd == "describe-eif":
    print(json.dumps({"Measurements": {"PCR0": "aa", "PCR1": "bb", "PCR2": sys.argv[3]}}))
elif cmd == "run-enclave":
    print(json.dumps({"EnclaveName": "app", "EnclaveID": "i-abc-enc2",
                      "ProcessID": int(sys.argv[3]), "EnclaveCID": 17}))
elif cmd == "console":
    sys.stdout.write("hello from " + sys.argv[3] + "\\n")
elif cmd == "garbage":
    print("not json")
else:
    sys.stderr.write("unknown command")
    sys.exit(1)
"""


@pytest.fixture
def fake_cli(tmp_path):
    script = tmp_path / "fake-nitro-cli"
    script.write_text("#!" + sys.executable + "\n" + FAKE_TOOL_BODY)
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return NitroCLI(program=str(script))


def test_detect_known_issues():
    assert KnownIssue.detect("foobar") is None
    assert (
        KnownIssue.detect(
            r'Linuxkit reported an error while creating the customer ramfs: "Add init containers:\nProcess init image: docker.io/library/1c505109-3417-4eec-9386-413dc32d4206\ntime=\"2022-10-20T22:13:33Z\" level=fatal msg=\"Failed to build init tarball from docker.io/library/1c505109-3417-4eec-9386-413dc32d4206: write /tmp/170765991: no space left on device\"\n"'
        )
        is KnownIssue.OUT_OF_DISK_SPACE
    )
    assert (
        KnownIssue.detect(
            r'Linuxkit reported an error while creating the customer ramfs: "Add init containers:\nProcess init image: docker.io/library/79ac5a4b-6e92-4e83-a351-ebdb2ff97d18\nAdd files:\n  rootfs/dev\n  rootfs/run\n  rootfs/sys\n  rootfs/var\n  rootfs/proc\n  rootfs/tmp\n  cmd\n  env\nCreate outputs:\n"'
        )
        is KnownIssue.IMAGE_TOO_LARGE_FOR_RAM
    )


def test_helpful_messages_differ():
    ram = KnownIssue.IMAGE_TOO_LARGE_FOR_RAM.helpful_message()
    disk = KnownIssue.OUT_OF_DISK_SPACE.helpful_message()
    assert "memory" in ram
    assert "disk space" in disk


def test_run_enclave_args_full():
    args = RunEnclaveArgs(
        cpu_count=2, memory_mb=512, eif_path="/x.eif", cid=16, debug_mode=True
    )
    assert args.to_args() == [
        "run-enclave",
        "--cpu-count",
        "2",
        "--memory",
        "512",
        "--eif-path",
        "/x.eif",
        "--enclave-cid",
        "16",
        "--debug-mode",
    ]


def test_run_enclave_args_minimal():
    args = RunEnclaveArgs(cpu_count=1, memory_mb=64, eif_path="a.eif")
    assert args.to_args() == [
        "run-enclave",
        "--cpu-count",
        "1",
        "--memory",
        "64",
        "--eif-path",
        "a.eif",
    ]


@pytest.mark.parametrize("cpu_count,memory_mb", [(0, 512), (2, 63)])
def test_run_enclave_args_rejects_small(cpu_count, memory_mb):
    with pytest.raises(ValueError):
        RunEnclaveArgs(cpu_count=cpu_count, memory_mb=memory_mb, eif_path="a").to_args()


def test_simple_args():
    assert DescribeEnclavesArgs().to_args() == ["describe-enclaves"]
    assert TerminateEnclaveArgs("e1").to_args() == ["terminate-enclave", "--enclave-id", "e1"]
    assert AttachConsoleArgs("e2").to_args() == ["console", "--enclave-id", "e2"]
    assert DescribeEifArgs("/a.eif").to_args() == ["describe-eif", "--eif-path", "/a.eif"]


def test_eif_info_round_trip():
    info = EIFInfo(EIFMeasurements("p0", "p1", "p2"))
    data = info.to_json()
    assert data["Measurements"]["PCR1"] == "p1"
    assert EIFInfo.from_json(data) == info


def test_eif_info_missing_field():
    with pytest.raises(ValueError):
        EIFInfo.from_json({"Measurements": {"PCR0": "a"}})


def test_describe_enclaves(fake_cli):
    assert fake_cli.describe_enclaves() == [
        EnclaveInfo(name="app", id="i-abc-enc1", process_id=42, cid=16)
    ]


def test_run_enclave(fake_cli):
    info = fake_cli.run_enclave(RunEnclaveArgs(cpu_count=3, memory_mb=128, eif_path="x"))
    assert info.process_id == 3
    assert info.id == "i-abc-enc2"


def test_describe_eif(fake_cli):
    info = fake_cli.describe_eif(os.path.join("some", "file.eif"))
    assert info.measurements.pcr2 == "--eif-path"


def test_terminate_enclave(fake_cli):
    fake_cli.terminate_enclave("good")
    with pytest.raises(NitroCLIError, match="failed to terminate"):
        fake_cli.terminate_enclave("bad")


def test_failure_reports_stderr(fake_cli):
    class Other:
        def to_args(self):
            return ["nonsense"]

    with pytest.raises(NitroCLIError, match="unknown command"):
        fake_cli.run_and_deserialize_output(Other())


def test_invalid_json(fake_cli):
    class Garbage:
        def to_args(self):
            return ["garbage"]

    with pytest.raises(NitroCLIError):
        fake_cli.run_and_deserialize_output(Garbage())


def test_console(fake_cli):
    stream = fake_cli.console("enc9")
    with stream:
        assert stream.read() == b"hello from enc9\n"


def test_missing_program(tmp_path):
    cli = NitroCLI(program=str(tmp_path / "does-not-exist"))
    with pytest.raises(NitroCLIError, match="failed to execute"):
        cli.describe_enclaves()