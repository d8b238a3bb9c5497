"""Shared constants for durastep."""

RUN_ID_HEADER = "Workflow-Run-Id"
RESUME_HEADER = "Workflow-Resume"
SIGNATURE_HEADER = "Workflow-Signature"

# Headers the engine adds itself; never exposed to workflow code.
ENGINE_HEADERS = frozenset(
    h.lower() for h in (RUN_ID_HEADER, RESUME_HEADER, SIGNATURE_HEADER)
)

RUN_ID_PREFIX = "wfr_"
DEFAULT_CONTINUATION_TOPIC = "continuations"
DEFAULT_WORKFLOW_RETRIES = 3
DEFAULT_CALL_RETRIES = 0
DEFAULT_CALL_TIMEOUT = 30.0
DEFAULT_CALL_CONCURRENCY = 10
DEFAULT_LEASE_TTL = 30.0
DEFAULT_LEASE_RETRY_DELAY = 1.0
DEFAULT_POLL_INTERVAL = 0.2
SIGNATURE_ISSUER = "durastep"
SIGNATURE_TTL = 300
