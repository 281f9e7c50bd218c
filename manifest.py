"""
Pod manifest construction for the benchmark run.

The default path builds the manifest as a plain dict (``build_pod_manifest``),
so an empty toleration list simply leaves the ``tolerations`` key out. Operators
who need a custom layout can pass a YAML template instead; ``render_template``
fills its ``{{NAME}}`` placeholders and drops the toleration line when there is
nothing to put there.
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Union

import yaml

from errors import TemplateError
from models.job import JobRequest, Toleration

logger = logging.getLogger(__name__)

# --- Template placeholders ---
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
REQUIRED_PLACEHOLDERS = ("POD_NAME", "NAMESPACE", "SECRET_NAME", "S3_ENDPOINT", "S3_BUCKET", "S3_REGION")
OPTIONAL_PLACEHOLDERS = ("CONFIG_NAME", "TOLERATIONS")
KNOWN_PLACEHOLDERS = REQUIRED_PLACEHOLDERS + OPTIONAL_PLACEHOLDERS
TOLERATIONS_PLACEHOLDER = "TOLERATIONS"

# --- Container scripts ---
CONNECTIVITY_CHECK_SCRIPT = """\
set -e
echo "S3 connectivity pre-flight check"
echo "  Endpoint: $OPENDAL_S3_ENDPOINT"
echo "  Bucket:   $OPENDAL_S3_BUCKET"
echo "  Region:   $OPENDAL_S3_REGION"
export AWS_ACCESS_KEY_ID="$OPENDAL_S3_ACCESS_KEY_ID"
export AWS_SECRET_ACCESS_KEY="$OPENDAL_S3_SECRET_ACCESS_KEY"
export AWS_DEFAULT_REGION="$OPENDAL_S3_REGION"
if [ -n "$OPENDAL_S3_SESSION_TOKEN" ]; then
  export AWS_SESSION_TOKEN="$OPENDAL_S3_SESSION_TOKEN"
fi
ENDPOINT_URL="https://$OPENDAL_S3_ENDPOINT"

echo "[1/4] endpoint reachability"
if curl -s --max-time 10 "$ENDPOINT_URL" >/dev/null 2>&1; then
  echo "endpoint is reachable"
else
  echo "endpoint check inconclusive, continuing with credential check"
fi

echo "[2/4] credentials"
if ! aws s3 ls --endpoint-url "$ENDPOINT_URL" 2>&1; then
  echo "ERROR: invalid or expired AWS credentials"
  exit 1
fi

echo "[3/4] bucket access: $OPENDAL_S3_BUCKET"
if ! aws s3 ls "s3://$OPENDAL_S3_BUCKET" --endpoint-url "$ENDPOINT_URL" 2>&1; then
  echo "ERROR: cannot access bucket $OPENDAL_S3_BUCKET"
  exit 1
fi

echo "[4/4] write permission"
PROBE_KEY="connectivity-test-$(date +%s).txt"
if echo "probe" | aws s3 cp - "s3://$OPENDAL_S3_BUCKET/$PROBE_KEY" --endpoint-url "$ENDPOINT_URL" 2>&1; then
  aws s3 rm "s3://$OPENDAL_S3_BUCKET/$PROBE_KEY" --endpoint-url "$ENDPOINT_URL" 2>&1 || true
else
  echo "ERROR: cannot write to bucket $OPENDAL_S3_BUCKET"
  exit 1
fi

echo "All connectivity checks passed"
"""

BENCHMARK_SCRIPT = """\
set -e
apt-get update && apt-get install -y git curl pkg-config libssl-dev ca-certificates
git clone https://github.com/apache/opendal.git
cd opendal/core/benches
echo "Endpoint: $OPENDAL_S3_ENDPOINT  Bucket: $OPENDAL_S3_BUCKET  Region: $OPENDAL_S3_REGION"
cargo bench --bench ops --features="tests,services-s3" --no-run

SKIP_ARGS=""
for filter in $OPENDAL_BENCH_SKIP; do
  SKIP_ARGS="$SKIP_ARGS --skip $filter"
done

echo "Running OPENDAL benchmark: $OPENDAL_BENCH_SAMPLE_COUNT samples, max $OPENDAL_BENCH_MAX_CONCURRENT concurrent, ${OPENDAL_BENCH_TIMEOUT}s timeout"
set +e
timeout "$OPENDAL_BENCH_TIMEOUT" cargo bench --bench ops --features="tests,services-s3" -- \\
  --sample-count "$OPENDAL_BENCH_SAMPLE_COUNT" $SKIP_ARGS 2>&1
EXIT_CODE=$?
set -e
if [ $EXIT_CODE -eq 124 ]; then
  echo "Benchmark timed out after ${OPENDAL_BENCH_TIMEOUT}s"
fi
if [ $EXIT_CODE -ne 0 ]; then
  exit $EXIT_CODE
fi
echo "Benchmark completed"
"""

MAIN_RESOURCES = {
    "requests": {"memory": "4Gi", "cpu": "2"},
    "limits": {"memory": "8Gi", "cpu": "4"},
}


# --- Payloads ---
def secret_data(request: JobRequest) -> Dict[str, str]:
    """Credential keys stored in the secret. ``session_token`` only when one exists."""
    creds = request.credentials
    data = {
        "access_key_id": creds.access_key_id,
        "secret_access_key": creds.secret_access_key,
    }
    if creds.session_token:
        data["session_token"] = creds.session_token
    return data


def config_data(request: JobRequest) -> Dict[str, str]:
    settings = request.settings
    return {
        "OPENDAL_BENCH_MAX_CONCURRENT": str(settings.max_concurrent),
        "OPENDAL_BENCH_SAMPLE_COUNT": str(settings.sample_count),
        "OPENDAL_BENCH_TIMEOUT": str(settings.timeout_seconds),
        "OPENDAL_BENCH_SKIP": " ".join(settings.skip_filters),
    }


# --- Structured manifest ---
def _secret_env(name: str, secret_name: str, key: str, optional: bool = False) -> Dict[str, Any]:
    ref: Dict[str, Any] = {"name": secret_name, "key": key}
    if optional:
        ref["optional"] = True
    return {"name": name, "valueFrom": {"secretKeyRef": ref}}


def _container_env(request: JobRequest) -> List[Dict[str, Any]]:
    token_optional = not request.require_session_token
    return [
        {"name": "OPENDAL_TEST", "value": "s3"},
        {"name": "OPENDAL_S3_ENDPOINT", "value": request.target.endpoint},
        {"name": "OPENDAL_S3_BUCKET", "value": request.target.bucket},
        {"name": "OPENDAL_S3_REGION", "value": request.target.region},
        _secret_env("OPENDAL_S3_ACCESS_KEY_ID", request.secret_name, "access_key_id"),
        _secret_env("OPENDAL_S3_SECRET_ACCESS_KEY", request.secret_name, "secret_access_key"),
        _secret_env("OPENDAL_S3_SESSION_TOKEN", request.secret_name, "session_token", optional=token_optional),
    ]


def build_pod_manifest(request: JobRequest) -> Dict[str, Any]:
    """
    Builds the benchmark pod manifest for a request.

    Args:
        request: The run's JobRequest.

    Returns:
        A dict suitable for ``ClusterGateway.apply_manifest``. The ``tolerations``
        key is only present when the request carries tolerations.
    """
    env = _container_env(request)
    main_env = env + [
        _secret_env("AWS_SESSION_TOKEN", request.secret_name, "session_token",
                    optional=not request.require_session_token),
    ]
    spec: Dict[str, Any] = {
        "initContainers": [{
            "name": request.init_container,
            "image": request.init_image,
            "command": ["/bin/bash", "-c"],
            "args": [CONNECTIVITY_CHECK_SCRIPT],
            "env": env,
        }],
        "containers": [{
            "name": request.main_container,
            "image": request.main_image,
            "command": ["/bin/bash", "-c"],
            "args": [BENCHMARK_SCRIPT],
            "env": main_env,
            "envFrom": [{"configMapRef": {"name": request.config_name}}],
            "resources": MAIN_RESOURCES,
        }],
        "restartPolicy": "Never",
    }
    if request.tolerations:
        spec["tolerations"] = [t.to_dict() for t in request.tolerations]

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": request.pod_name,
            "namespace": request.namespace,
            "labels": {"app": "opendal-bench", "managed-by": "bench-orchestrator"},
        },
        "spec": spec,
    }


def dump_manifest(doc: Mapping[str, Any]) -> str:
    return yaml.safe_dump(dict(doc), sort_keys=False, default_flow_style=False)


# --- Text templates ---
def toleration_fragment(tolerations: Sequence[Toleration]) -> str:
    """YAML block for the TOLERATIONS placeholder, or '' when there are none."""
    if not tolerations:
        return ""
    return yaml.safe_dump({"tolerations": [t.to_dict() for t in tolerations]}, sort_keys=False).rstrip("\n")


def template_params(request: JobRequest) -> Dict[str, str]:
    return {
        "POD_NAME": request.pod_name,
        "NAMESPACE": request.namespace,
        "SECRET_NAME": request.secret_name,
        "CONFIG_NAME": request.config_name,
        "S3_ENDPOINT": request.target.endpoint,
        "S3_BUCKET": request.target.bucket,
        "S3_REGION": request.target.region,
        "TOLERATIONS": toleration_fragment(request.tolerations),
    }


def load_template(path: Union[str, Path]) -> str:
    path = Path(path)
    if not path.is_file():
        raise TemplateError(f"Template file '{path}' does not exist")
    return path.read_text(encoding="utf-8")


def _is_path(template: Union[str, Path]) -> bool:
    """A one-line string naming a YAML file or an existing file is a path, not template text."""
    if isinstance(template, os.PathLike):
        return True
    if "\n" in template or "{{" in template:
        return False
    if template.endswith((".yaml", ".yml")):
        return True
    try:
        return Path(template).is_file()
    except (OSError, ValueError):
        return False


def _expand_tolerations(text: str, fragment: str) -> str:
    lines = []
    for line in text.splitlines():
        match = PLACEHOLDER_PATTERN.search(line)
        if not match or match.group(1) != TOLERATIONS_PLACEHOLDER:
            lines.append(line)
            continue
        if line.strip() != match.group(0):
            raise TemplateError("The TOLERATIONS placeholder must be on a line of its own")
        if not fragment:
            # An empty placeholder line would leave `spec:` with a dangling key.
            continue
        indent = line[: len(line) - len(line.lstrip())]
        lines.extend(indent + fragment_line for fragment_line in fragment.splitlines())
    return "\n".join(lines) + "\n"


def render_template(template: Union[str, Path], params: Mapping[str, str]) -> Dict[str, Any]:
    """
    Fills a manifest template and parses the result.

    Args:
        template: Template text, or a path (Path or path string) to a template file.
        params: Values for the placeholders; unknown keys are rejected.

    Returns:
        The parsed manifest.

    Raises:
        TemplateError: If the file is missing, a required placeholder is absent
            from the template, the template uses an unknown placeholder,
            tolerations are given without a place to put them, or the rendered
            text is not a YAML mapping.
    """
    if _is_path(template):
        template = load_template(template)

    unknown_params = set(params) - set(KNOWN_PLACEHOLDERS)
    if unknown_params:
        raise TemplateError(f"Unknown template parameters: {', '.join(sorted(unknown_params))}")

    used = set(PLACEHOLDER_PATTERN.findall(template))
    unknown = used - set(KNOWN_PLACEHOLDERS)
    if unknown:
        raise TemplateError(f"Template references unknown placeholders: {', '.join(sorted(unknown))}")
    missing = [name for name in REQUIRED_PLACEHOLDERS if name not in used]
    if missing:
        raise TemplateError(f"Template is missing required placeholders: {', '.join(missing)}")
    unset = [name for name in used if name != TOLERATIONS_PLACEHOLDER and name not in params]
    if unset:
        raise TemplateError(f"No value given for placeholders: {', '.join(sorted(unset))}")
    if params.get(TOLERATIONS_PLACEHOLDER) and TOLERATIONS_PLACEHOLDER not in used:
        raise TemplateError(
            f"Tolerations were given but the template has no {{{{{TOLERATIONS_PLACEHOLDER}}}}} placeholder")

    text = _expand_tolerations(template, params.get(TOLERATIONS_PLACEHOLDER, ""))
    text = PLACEHOLDER_PATTERN.sub(lambda m: str(params[m.group(1)]), text)

    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise TemplateError(f"Rendered template is not valid YAML: {e}") from e
    if not isinstance(doc, dict):
        raise TemplateError("Rendered template is not a YAML mapping")
    logger.debug(f"Rendered manifest template with placeholders: {sorted(used)}")
    return doc
