"""
Input Sanitization and Threat Detection

Applies a per-field sanitization policy plus the threat pattern library to text
values before they reach storage or rendering.

Pipeline per value:
1. Length clamp (excessive_length)
2. Threat detection for every enabled category
3. Threat removal through category rewrite rules
4. HTML policy: strip all markup, or allow-list it with bleach
5. Control-character removal and whitespace normalization

Stages 2-5 repeat until the text is stable, and plain-text output is HTML-escaped
last, so sanitizing already-sanitized output returns it unchanged.
"""
import html
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

import bleach
from email_validator import validate_email, EmailNotValidError

from models.security import (
    FieldValidation,
    FormSanitizationResult,
    SanitizationConfig,
    SanitizationResult,
)
from security.threat_patterns import (
    COMMAND_INJECTION,
    CONTROL_CHARACTERS,
    DANGEROUS_URI,
    EVENT_HANDLER_ATTRIBUTE,
    EXCESSIVE_LENGTH,
    HTML_TAG,
    INVALID_INPUT_TYPE,
    LDAP_INJECTION,
    PATH_TRAVERSAL,
    SQL_INJECTION,
    WHITESPACE_RUN,
    XSS,
    detect_threats,
    remove_threats,
)
from utils.logging_config import get_security_logger

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

MAX_SANITIZE_PASSES = 8
LOGGED_INPUT_PREVIEW = 100
ALLOWED_URL_PROTOCOLS = frozenset({"http", "https", "mailto", "tel"})

_DANGEROUS_ELEMENTS = re.compile(
    r"<(script|iframe|object|style)\b[^>]*>.*?</\1\s*>|<(?:script|iframe|object|style|embed|link|meta|base)\b[^>]*>",
    re.IGNORECASE | re.DOTALL
)

_STRICT_DEFAULTS = dict(
    allow_html=False,
    strip_scripts=True,
    normalize_whitespace=True,
    prevent_sql_injection=True,
    prevent_xss=True,
    log_suspicious_content=True,
)

# Default policies for the field archetypes of the claims portal
SANITIZATION_CONFIGS: Dict[str, SanitizationConfig] = {
    # Plain text content
    "text": SanitizationConfig(max_length=1000, **_STRICT_DEFAULTS),

    # Rich text content (like FAQ answers and content sections)
    "rich_text": SanitizationConfig(
        allow_html=True,
        allowed_tags=("p", "br", "strong", "em", "u", "ol", "ul", "li", "h1", "h2", "h3", "h4", "h5", "h6"),
        allowed_attributes={
            "*": ("class",),
            "a": ("href", "title", "target"),
            "img": ("src", "alt", "width", "height"),
        },
        max_length=10000,
        strip_scripts=True,
        normalize_whitespace=True,
        prevent_sql_injection=True,
        prevent_xss=True,
        log_suspicious_content=True,
    ),

    "email": SanitizationConfig(max_length=254, **_STRICT_DEFAULTS),  # RFC 5321 limit
    "name": SanitizationConfig(max_length=100, **_STRICT_DEFAULTS),
    "address": SanitizationConfig(max_length=500, **_STRICT_DEFAULTS),
    "phone": SanitizationConfig(max_length=20, **_STRICT_DEFAULTS),
    "url": SanitizationConfig(max_length=2000, **_STRICT_DEFAULTS),
}

DEFAULT_CONFIG = SANITIZATION_CONFIGS["text"]


def get_sanitization_config(name: str) -> SanitizationConfig:
    """Look up a named policy, falling back to plain text."""
    return SANITIZATION_CONFIGS.get(name, DEFAULT_CONFIG)


def _enabled_categories(config: SanitizationConfig) -> List[str]:
    flags = (
        (SQL_INJECTION, config.prevent_sql_injection),
        (XSS, config.prevent_xss),
        (COMMAND_INJECTION, config.prevent_command_injection),
        (PATH_TRAVERSAL, config.prevent_path_traversal),
        (LDAP_INJECTION, config.prevent_ldap_injection),
    )
    return [category for category, enabled in flags if enabled]


def escape_html(text: str) -> str:
    """Escape & < > " ' and /."""
    return html.escape(text, quote=True).replace("/", "&#x2F;")


def normalize_whitespace(text: str) -> str:
    return WHITESPACE_RUN.sub(" ", text).strip()


def _sanitize_markup(text: str, config: SanitizationConfig) -> str:
    """Remove markup that is never allowed, then apply the tag/attribute allow-list."""
    text = _DANGEROUS_ELEMENTS.sub("", text)
    text = EVENT_HANDLER_ATTRIBUTE.sub("", text)
    text = DANGEROUS_URI.sub("", text)
    return bleach.clean(
        text,
        tags=set(config.allowed_tags),
        attributes={tag: list(names) for tag, names in config.allowed_attributes.items()},
        protocols=ALLOWED_URL_PROTOCOLS,
        strip=True,
        strip_comments=True,
    )


def _apply_html_policy(text: str, config: SanitizationConfig) -> str:
    if config.allow_html:
        return _sanitize_markup(text, config)
    if config.strip_scripts:
        return HTML_TAG.sub("", text)
    return text


def _clean_pass(text: str, detected: List[str], config: SanitizationConfig) -> str:
    text = remove_threats(text, detected)
    text = _apply_html_policy(text, config)
    text = CONTROL_CHARACTERS.sub("", text)
    if config.normalize_whitespace:
        text = normalize_whitespace(text)
    return text


def _log_suspicious_content(
    value: str,
    threats: List[str],
    context: Mapping[str, Any]
) -> None:
    field_name = context.get("field_name") or "unknown"
    security_logger.warning(
        f"[SECURITY] suspicious_activity: Suspicious input detected in field: {field_name}",
        extra={
            "client_id": context.get("user_ip"),
            "threats": threats,
            "security_event": {
                "type": "suspicious_activity",
                "ip_address": context.get("user_ip"),
                "user_id": context.get("user_id"),
                "field_name": field_name,
                "original_input": value[:LOGGED_INPUT_PREVIEW],
                "sanitization_applied": True,
            },
        },
    )


def sanitize_input(
    value: Any,
    config: SanitizationConfig = DEFAULT_CONFIG,
    context: Optional[Mapping[str, Any]] = None
) -> SanitizationResult:
    """
    Sanitize one value under a policy.

    Args:
        value: Input value; anything but a string yields an empty result
        config: Sanitization policy
        context: Optional ``user_ip`` / ``user_id`` / ``field_name`` used for logging

    Returns:
        SanitizationResult with the cleaned value and detected threat categories
    """
    if not isinstance(value, str):
        return SanitizationResult(
            sanitized="",
            was_modified=True,
            threats=[INVALID_INPUT_TYPE],
            original_length=0,
            sanitized_length=0,
        )

    threats: List[str] = []

    def add_threats(found):
        for threat in found:
            if threat not in threats:
                threats.append(threat)

    # Plain text is inspected in decoded form so entity-encoded payloads are caught
    text = value if config.allow_html else html.unescape(value)

    if config.max_length and len(text) > config.max_length:
        text = text[:config.max_length]
        add_threats([EXCESSIVE_LENGTH])

    categories = _enabled_categories(config)
    for _ in range(MAX_SANITIZE_PASSES):
        detected = detect_threats(text, categories)
        add_threats(detected)
        cleaned = _clean_pass(text, detected, config)
        if cleaned == text:
            break
        text = cleaned
    else:
        logger.warning(f"⚠️ [SANITIZER] Input did not stabilize after {MAX_SANITIZE_PASSES} passes")

    sanitized = text if config.allow_html else escape_html(text)

    if config.log_suspicious_content and threats and context and context.get("user_ip"):
        _log_suspicious_content(value, threats, context)

    return SanitizationResult(
        sanitized=sanitized,
        was_modified=sanitized != value,
        threats=threats,
        original_length=len(value),
        sanitized_length=len(sanitized),
    )


def _merge_threats(into: List[str], found: List[str]) -> None:
    into.extend(t for t in found if t not in into)


def _sanitize_sequence(
    items: Sequence[Any],
    field_name: str,
    field_configs: Mapping[str, SanitizationConfig],
    context: Optional[Mapping[str, Any]]
) -> Tuple[List[Any], List[str], bool]:
    """Sanitize list elements with the policy of the field that holds the list."""
    config = field_configs.get(field_name, DEFAULT_CONFIG)
    field_context = {**(context or {}), "field_name": field_name}
    cleaned: List[Any] = []
    threats: List[str] = []
    modified = False

    for item in items:
        if isinstance(item, str):
            result = sanitize_input(item, config, field_context)
            cleaned.append(result.sanitized)
            _merge_threats(threats, result.threats)
            modified = modified or result.was_modified
        elif isinstance(item, Mapping):
            nested = sanitize_form_data(item, field_configs, context)
            cleaned.append(nested.sanitized)
            for nested_threats in nested.threats.values():
                _merge_threats(threats, nested_threats)
            modified = modified or nested.was_modified
        elif isinstance(item, (list, tuple)):
            inner, inner_threats, inner_modified = _sanitize_sequence(item, field_name, field_configs, context)
            cleaned.append(inner)
            _merge_threats(threats, inner_threats)
            modified = modified or inner_modified
        else:
            cleaned.append(item)

    return cleaned, threats, modified


def sanitize_form_data(
    data: Mapping[str, Any],
    field_configs: Optional[Mapping[str, SanitizationConfig]] = None,
    context: Optional[Mapping[str, Any]] = None
) -> FormSanitizationResult:
    """
    Sanitize every string in a payload, recursing into nested mappings and lists.

    Field policies are looked up by field name at every nesting level; unmapped
    fields use the plain-text policy. List elements use the policy of the field
    holding the list. Threats found below a top-level key are reported under it.
    """
    field_configs = field_configs or {}
    sanitized: Dict[str, Any] = {}
    threats: Dict[str, List[str]] = {}
    was_modified = False

    for field_name, value in data.items():
        if isinstance(value, str):
            config = field_configs.get(field_name, DEFAULT_CONFIG)
            field_context = {**(context or {}), "field_name": field_name}
            result = sanitize_input(value, config, field_context)

            sanitized[field_name] = result.sanitized
            if result.threats:
                threats[field_name] = result.threats
            was_modified = was_modified or result.was_modified

        elif isinstance(value, Mapping):
            nested = sanitize_form_data(value, field_configs, context)
            sanitized[field_name] = nested.sanitized

            flattened: List[str] = []
            for nested_threats in nested.threats.values():
                _merge_threats(flattened, nested_threats)
            if flattened:
                threats[field_name] = flattened
            was_modified = was_modified or nested.was_modified

        elif isinstance(value, (list, tuple)):
            items, found, modified = _sanitize_sequence(value, field_name, field_configs, context)
            sanitized[field_name] = items
            if found:
                threats[field_name] = found
            was_modified = was_modified or modified

        else:
            sanitized[field_name] = value

    return FormSanitizationResult(sanitized=sanitized, threats=threats, was_modified=was_modified)


# ============================================================================
# FIELD VALIDATION
# ============================================================================

def _validate_email(value: str) -> bool:
    if len(value) > 254:
        return False
    try:
        validate_email(value, check_deliverability=False)
        return True
    except EmailNotValidError:
        return False


def _validate_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    if parsed.scheme not in ALLOWED_URL_PROTOCOLS:
        return False
    if parsed.scheme in ("http", "https"):
        return bool(parsed.netloc)
    return bool(parsed.path)


def _validate_phone(value: str) -> bool:
    digits = re.sub(r"\D", "", value)
    return 7 <= len(digits) <= 15


_FIELD_VALIDATORS = {
    "email": (_validate_email, "Invalid email format"),
    "url": (_validate_url, "Invalid URL format"),
    "phone": (_validate_phone, "Invalid phone number format"),
}


def validate_field(value: str, field_type: str) -> FieldValidation:
    """Format check for email, url and phone fields; other types always pass."""
    validator = _FIELD_VALIDATORS.get(field_type)
    if validator is None:
        return FieldValidation(is_valid=True)
    check, error = validator
    if check(value):
        return FieldValidation(is_valid=True)
    return FieldValidation(is_valid=False, error=error)


def sanitize_file_name(file_name: str) -> str:
    """Reduce an uploaded file name to a safe base name."""
    # Remove path components
    sanitized = re.sub(r"^.*[\\/]", "", file_name)

    sanitized = re.sub(r"[<>:\"|?*\x00-\x1f\x7f-\x9f]", "_", sanitized)
    sanitized = re.sub(r"\.{2,}", ".", sanitized)
    sanitized = re.sub(r"^\.+|\.+$", "", sanitized.strip())

    if not sanitized:
        sanitized = "unnamed_file"

    if len(sanitized) > 200:
        dot = sanitized.rfind(".")
        if 0 < dot and len(sanitized) - dot < 20:
            ext = sanitized[dot:]
            sanitized = sanitized[:200 - len(ext)] + ext
        else:
            sanitized = sanitized[:200]

    return sanitized
