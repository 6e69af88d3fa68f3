# enclaver

Package a Docker image into a self-executing enclave image, and the building
blocks of the supervisor that runs inside it: manifest loading, egress policy,
an attestation HTTP API, a process launcher and a console that serves the
entrypoint's output and status.

## Installation

```
pip install .
```

Building images needs a local Docker daemon, reached through
`/var/run/docker.sock` or a `unix://` socket named in `DOCKER_HOST`. Running
enclaves needs a host set up for Nitro Enclaves.

## The manifest

Everything is described by a manifest file, `enclaver.yaml` by default:

```yaml
version: v1
name: "example"
target: "example-enclave:latest"
sources:
  app: "app-image:latest"
defaults:
  cpu_count: 2
  memory_mb: 4096
ingress:
  - listen_port: 8000
egress:
  allow:
    - "**.amazonaws.com"
    - "169.254.169.254"
  deny:
    - "10.0.0.0/8"
kms_proxy:
  listen_port: 9999
api:
  listen_port: 9001
```

`enclaver.manifest.parse_manifest` and `load_manifest` reject unknown fields,
missing required fields, wrong types and out-of-range ports with a
`ManifestError`. `sources.supervisor` and `sources.wrapper` may name
alternative supervisor and wrapper base images.

Egress patterns are either IP networks (`1.2.3.4`, `10.0.0.0/8`, `::/0`) or
domain patterns, where `*` matches exactly one label and `**` matches one or
more leading labels. A host is allowed when it matches an allow pattern and no
deny pattern.

## Command line

Build a release image from the manifest in the current directory:

```
enclaver build
```

Use another manifest, and pull every external image afresh:

```
enclaver build -f path/to/enclaver.yaml --pull
```

The build adds the manifest and the supervisor binary to the application
image, converts the result to an EIF inside a conversion container, packages
the EIF and manifest into the wrapper base image, tags it with the manifest's
`target`, and prints the EIF measurements as JSON. Known conversion failures
(out of memory, out of disk space) are reported with an explanation.

Run a built image, either by name or via the manifest's `target`, forwarding
host ports:

```
enclaver run example-enclave:latest -p 8000:8000
enclaver run -f enclaver.yaml
```

This starts `docker run --rm` with the Nitro Enclaves device passed through.
Giving both an image name and a manifest file is an error.

## Library use

```python
from enclaver.manifest import parse_manifest
from enclaver.policy.domain_filter import DomainFilter
from enclaver.policy.ip_filter import IpFilter
from enclaver.policy.egress_policy import EgressPolicy

with open("enclaver.yaml", "rb") as f:
    manifest = parse_manifest(f.read())
print(manifest.target)

domains = DomainFilter()
domains.add("**.amazonaws.com")
assert domains.matches("kms.us-east-1.amazonaws.com")
assert not domains.matches("amazonaws.com")

ips = IpFilter()
ips.add("66.254.35.0/24")
assert ips.matches("66.254.35.22")

policy = EgressPolicy.allow_all()
assert policy.is_host_allowed("[::1]")
```

Other modules:

- `enclaver.nitro_cli` — `NitroCLI` runs the `nitro-cli` tool (run, describe,
  terminate, describe an EIF, attach a console) and decodes its JSON output;
  `KnownIssue.detect` recognises common conversion failures.
- `enclaver.images` — `DockerClient`, `ImageManager` and `LayerBuilder` for
  inspecting, pulling, tagging and appending layers to images.
- `enclaver.build` — `EnclaveArtifactBuilder`, used by `enclaver build`.
- `enclaver.keypair` — `KeyPair`, a 2048-bit RSA key pair with DER and PEM
  public key export.
- `enclaver.api` — `ApiHandler` serves `POST /v1/attestation`. The JSON body
  may hold base64 `nonce` and `user_data` and a PEM `public_key`; the answer is
  the attestation document as `application/cbor`, or 400 for a bad body, 404
  for another path and 405 for another method.
- `enclaver.http_util` — `HttpServer`, bound to 127.0.0.1, turning handler
  exceptions into 500 responses.
- `enclaver.http_client` — `new_http_proxy_client`, an `httpx.AsyncClient`
  that sends every request through a proxy.
- `enclaver.odyn.config` — `Configuration` loads the manifest and ingress TLS
  keys from a config directory and derives the egress proxy URI, KMS proxy
  port, API port and per-region KMS endpoint.
- `enclaver.odyn.launcher` — `run_child` and `start_child` run the entrypoint
  under given credentials and reap every child until it exits.
- `enclaver.odyn.console` — `AppLog` keeps the last 128 KiB of the
  entrypoint's output and `AppStatus` its status as JSON lines; both serve
  every connected client over vsock.
- `enclaver.odyn.api_service` — `ApiService` runs the attestation API on the
  manifest's `api.listen_port`.

## What it does not do

- There is no supervisor command to run inside the enclave; the pieces above
  have to be assembled by the caller.
- There are no ingress or egress proxies and no KMS proxy; the manifest
  sections for them are only validated and read by `Configuration`.
- Attestation documents come from an `AttestationProvider`; only
  `StaticAttestationProvider`, which returns a fixed document, is included.
  Nothing talks to the Nitro Secure Module device.
- There is no command to run an enclave from inside a release image.