"""Shared constants for DeskGate.

All size limits, window lengths and numeric caps used across modules are
defined here. Other modules import from here instead of repeating numbers.
"""

# ─── Upload limits ────────────────────────────────────────────────────────────

# Maximum accepted size of a single uploaded file (overridden by MAX_FILE_SIZE).
DEFAULT_MAX_FILE_SIZE: int = 10_485_760  # 10 MiB

# Maximum number of files in one multipart request (overridden by MAX_FILES_PER_REQUEST).
DEFAULT_MAX_FILES: int = 5

# Maximum number of non-file form fields in one multipart request.
DEFAULT_MAX_FIELDS: int = 10

# Maximum length of a form field name, in characters.
DEFAULT_MAX_FIELD_NAME_SIZE: int = 100

# Maximum size of a single non-file form field value.
DEFAULT_MAX_FIELD_SIZE: int = 1_048_576  # 1 MiB

# Allowance per multipart part for boundaries and part headers.
MULTIPART_PART_OVERHEAD_BYTES: int = 4_096

# Bytes of each upload decoded as text for the malicious-content scan.
SCAN_PREFIX_BYTES: int = 1024

# Bytes compared against the magic-byte signature table.
SIGNATURE_PREFIX_BYTES: int = 4

# declared_size / true_size above this is treated as a zip-bomb indicator.
MAX_COMPRESSION_RATIO: int = 100

# ─── Rate limiting ────────────────────────────────────────────────────────────

ONE_MINUTE_MS: int = 60 * 1000
FIFTEEN_MINUTES_MS: int = 15 * ONE_MINUTE_MS

# Namespace for every counter written to the shared store.
RATE_LIMIT_KEY_PREFIX: str = "rate_limit"

# Client-side timeout for a single shared-store call. Expiry triggers fail-open.
STORE_TIMEOUT_MS: int = 250

# ─── Server ───────────────────────────────────────────────────────────────────

DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 8080
