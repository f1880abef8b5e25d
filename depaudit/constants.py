"""
Constants for depaudit.

Stage identities, retention windows, interchange defaults, alert labels and
the secret patterns used to keep tokens out of logs.

SECURITY NOTE: All regex patterns are pre-compiled. Never construct
patterns from user input.
"""

import re
from typing import Final

# =============================================================================
# STAGE IDENTITIES
# =============================================================================

STAGE_VULNERABILITY: Final[str] = "vulnerability"
STAGE_HYGIENE: Final[str] = "dependency-hygiene"
STAGE_SUPPLY_CHAIN: Final[str] = "supply-chain"

ALL_STAGES: Final[tuple[str, ...]] = (
    STAGE_VULNERABILITY,
    STAGE_HYGIENE,
    STAGE_SUPPLY_CHAIN,
)

STAGE_TITLES: Final[dict[str, str]] = {
    STAGE_VULNERABILITY: "Vulnerability Scan",
    STAGE_HYGIENE: "Dependency Analysis",
    STAGE_SUPPLY_CHAIN: "Supply Chain Security",
}

# =============================================================================
# SCANNER TOOLS
# =============================================================================

TOOL_CARGO_AUDIT: Final[str] = "cargo-audit"
TOOL_CARGO_DENY: Final[str] = "cargo-deny"
TOOL_CARGO_GEIGER: Final[str] = "cargo-geiger"
TOOL_CARGO_MACHETE: Final[str] = "cargo-machete"
TOOL_CARGO_UDEPS: Final[str] = "cargo-udeps"
TOOL_CARGO_OUTDATED: Final[str] = "cargo-outdated"
TOOL_CARGO_TREE: Final[str] = "cargo-tree"
TOOL_CARGO_VET: Final[str] = "cargo-vet"
TOOL_CARGO_CREV: Final[str] = "cargo-crev"

# Tools run by each stage, in order; the first one is the stage's main report
STAGE_TOOLS: Final[dict[str, tuple[str, ...]]] = {
    STAGE_VULNERABILITY: (TOOL_CARGO_AUDIT, TOOL_CARGO_DENY, TOOL_CARGO_GEIGER),
    STAGE_HYGIENE: (TOOL_CARGO_MACHETE, TOOL_CARGO_UDEPS, TOOL_CARGO_OUTDATED, TOOL_CARGO_TREE),
    STAGE_SUPPLY_CHAIN: (TOOL_CARGO_VET, TOOL_CARGO_CREV),
}

# Report-only tools: when they cannot run, the stage records a warning
# instead of turning into an error
OPTIONAL_TOOLS: Final[frozenset[str]] = frozenset({
    TOOL_CARGO_GEIGER,
    TOOL_CARGO_UDEPS,
    TOOL_CARGO_CREV,
})

# =============================================================================
# LIMITS
# =============================================================================

MAX_FILE_SIZE_BYTES: Final[int] = 10 * 1024 * 1024  # 10 MB
MAX_REPORT_VALUE_LENGTH: Final[int] = 500
MAX_LOG_LINE_LENGTH: Final[int] = 4000

DEFAULT_STAGE_TIMEOUT_SECONDS: Final[int] = 1800
DEFAULT_STAGE_GRACE_SECONDS: Final[float] = 30.0

# =============================================================================
# ARTIFACT RETENTION (days)
# =============================================================================

RETENTION_DAYS: Final[dict[str, int]] = {
    STAGE_VULNERABILITY: 90,
    STAGE_HYGIENE: 30,
    STAGE_SUPPLY_CHAIN: 30,
}

# =============================================================================
# INTERCHANGE DOCUMENT (SARIF)
# =============================================================================

SARIF_SCHEMA: Final[str] = (
    "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/"
    "Schemata/sarif-schema-2.1.0.json"
)
SARIF_VERSION: Final[str] = "2.1.0"

DEFAULT_TOOL_NAME: Final[str] = "cargo-audit"
DEFAULT_TOOL_VERSION: Final[str] = "0.21.0"
DEFAULT_TOOL_URI: Final[str] = "https://github.com/RustSec/rustsec/tree/main/cargo-audit"

# =============================================================================
# ALERTING
# =============================================================================

INCIDENT_KEY_PREFIX: Final[str] = "security-audit"
INCIDENT_LABEL_PREFIX: Final[str] = "incident:"
DEFAULT_ALERT_LABELS: Final[tuple[str, ...]] = (
    "security",
    "audit-failure",
    "priority-high",
)

# =============================================================================
# SECRET PATTERNS (log redaction)
# =============================================================================

SECRET_PATTERNS: Final[dict[str, re.Pattern[str]]] = {
    "github_token": re.compile(
        r"gh[pousr]_[A-Za-z0-9_]{36,}",
        re.IGNORECASE
    ),
    "github_fine_grained": re.compile(
        r"github_pat_[A-Za-z0-9_]{22,}"
    ),
    "bearer_header": re.compile(
        r"(?i)bearer\s+[A-Za-z0-9._\-]{20,}"
    ),
    "private_key": re.compile(
        r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"
    ),
}

SECRET_KEYWORDS: Final[frozenset[str]] = frozenset({
    "password", "passwd", "secret", "token", "api_key", "apikey",
    "authorization", "credential", "private_key",
})
