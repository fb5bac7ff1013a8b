"""
Threat pattern library.

Immutable, pre-compiled pattern sets grouped by threat category, plus the
category-specific rewrite rules used to neutralize a match. Detection is
pattern based and can be bypassed by encodings the patterns do not anticipate;
it complements parameterized queries and output encoding, it does not replace them.
"""
import re
from typing import Callable, Dict, Iterable, List, Pattern, Tuple

SQL_INJECTION = "sql_injection_attempt"
XSS = "xss_attempt"
COMMAND_INJECTION = "command_injection_attempt"
PATH_TRAVERSAL = "path_traversal_attempt"
LDAP_INJECTION = "ldap_injection_attempt"
EXCESSIVE_LENGTH = "excessive_length"
INVALID_INPUT_TYPE = "invalid_input_type"

_I = re.IGNORECASE
_IS = re.IGNORECASE | re.DOTALL

SQL_INJECTION_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"\bUNION\b[^\n]*?\bSELECT\b", _I),
    re.compile(r"\bSELECT\b[^\n]*?\bFROM\b", _I),
    re.compile(r"\bINSERT\b[^\n]*?\bINTO\b", _I),
    re.compile(r"\bUPDATE\b[^\n]*?\bSET\b", _I),
    re.compile(r"\bDELETE\b[^\n]*?\bFROM\b", _I),
    re.compile(r"\b(?:DROP|CREATE|ALTER|TRUNCATE)\b[^\n]*?\bTABLE\b", _I),
    re.compile(r"\bEXEC(?:UTE)?\b", _I),
    re.compile(r"\b(?:SP|XP)_\w+", _I),
    re.compile(r"--|/\*|\*/"),
    re.compile(r"\b(?:OR|AND)\b\s+['\"]?\w+['\"]?\s*(?:<>|<=|>=|=|<|>)\s*['\"]?\w+", _I),
    re.compile(r"(['\"])\s*(?:OR|AND)\s*\1\s*=\s*\1", _I),
    re.compile(r"(['\"])\s*;\s*(?:DROP|DELETE|UPDATE|INSERT)", _I),
    re.compile(r"\b(?:SLEEP|BENCHMARK)\s*\(|\bWAITFOR\s+DELAY\b", _I),
)

# Event-handler attributes such as onclick= / onerror=
EVENT_HANDLER_ATTRIBUTE = re.compile(r"\s*\bon[a-z]{3,}\s*=\s*(?:\"[^\"]*\"|'[^']*'|[^\s>]+)", _I)
DANGEROUS_URI = re.compile(r"(?:javascript|vbscript)\s*:|data\s*:\s*text/html", _I)

XSS_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"<script\b[^>]*>.*?</script\s*>", _IS),
    re.compile(r"<script\b[^>]*>", _I),
    re.compile(r"<iframe\b[^>]*>.*?</iframe\s*>", _IS),
    re.compile(r"<iframe\b[^>]*>", _I),
    re.compile(r"<object\b[^>]*>.*?</object\s*>", _IS),
    re.compile(r"<style\b[^>]*>.*?</style\s*>", _IS),
    re.compile(r"<(?:embed|link|meta|base)\b[^>]*>", _I),
    re.compile(r"<[^>]+?[\s/\"']on[a-z]{3,}\s*=[^>]*>", _I),
    re.compile(r"\bon(?:load|error|click|dblclick|mouse[a-z]+|focus|blur|change|submit|key[a-z]+|input|toggle|animation[a-z]+)\s*=", _I),
    DANGEROUS_URI,
    re.compile(r"expression\s*\(", _I),
    re.compile(r"@import", _I),
    re.compile(r"url\s*\(", _I),
)

_SHELL_COMMANDS = (
    "cat|ls|pwd|whoami|id|uname|ps|netstat|ifconfig|ping|nslookup|dig|curl|wget|nc|telnet|ssh|scp|rsync|"
    "rm|mv|cp|mkdir|rmdir|chmod|chown|kill|killall|pkill|sudo|su|passwd|useradd|userdel|groupadd|groupdel|"
    "bash|sh|zsh|python|perl|powershell|cmd"
)

COMMAND_INJECTION_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"(?:;|&&|\|\|?|`)\s*(?:" + _SHELL_COMMANDS + r")\b", _I),
    re.compile(r"\$\([^)]*\)"),
    re.compile(r"`[^`]*`"),
    re.compile(r"\$\{[^}]*\}"),
    re.compile(r"\.(?:bat|cmd|exe|sh|bash|zsh|csh|tcsh|fish|ps1|vbs|js|jar|py|pl|php|rb)$", _I | re.MULTILINE),
)
SHELL_METACHARACTERS = re.compile(r"[;&|`$()]")

ENCODED_TRAVERSAL_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"%252e%252e", _I),
    re.compile(r"%2e%2e", _I),
    re.compile(r"%c0%ae%c0%ae", _I),
    re.compile(r"%c1%9c", _I),
    re.compile(r"%2f|%5c", _I),
)

PATH_TRAVERSAL_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"(?:^|[\\/])\.\.(?:[\\/]|$)"),
    re.compile(r"\.\.(?:%2f|%5c)", _I),
) + ENCODED_TRAVERSAL_PATTERNS[:4]

LDAP_INJECTION_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"\(\s*[|&!]\s*\("),
    re.compile(r"\)\s*\(\s*[|&!]"),
    re.compile(r"\(\s*\w+\s*[~<>]?=\s*\*[^)]*\)"),
    re.compile(r"\*\)\s*\("),
    re.compile(r"\)\s*\(\s*\w+\s*[~<>]?="),
)
LDAP_METACHARACTERS = re.compile(r"[()&|!*]")

HTML_TAG = re.compile(r"<[^>]*>")
CONTROL_CHARACTERS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
WHITESPACE_RUN = re.compile(r"\s+")


def strip_sql_injection(text: str) -> str:
    """Remove SQL injection patterns, quotes, statement terminators and comments."""
    for pattern in SQL_INJECTION_PATTERNS:
        text = pattern.sub("", text)
    text = re.sub(r"['\";]", "", text)
    text = re.sub(r"--.*$", "", text, flags=re.MULTILINE)
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.DOTALL)
    return text


def strip_xss(text: str) -> str:
    """Remove script-bearing markup, event handlers and script URIs."""
    text = EVENT_HANDLER_ATTRIBUTE.sub("", text)
    for pattern in XSS_PATTERNS:
        text = pattern.sub("", text)
    return text


def strip_command_injection(text: str) -> str:
    return SHELL_METACHARACTERS.sub("", text)


def strip_path_traversal(text: str) -> str:
    """Collapse '..' segments, including URL-encoded forms."""
    for pattern in ENCODED_TRAVERSAL_PATTERNS:
        text = pattern.sub("", text)
    previous = None
    while previous != text:
        previous = text
        text = re.sub(r"\.\.[\\/]", "", text)
        text = re.sub(r"[\\/]\.\.(?=[\\/]|$)", "", text)
    if text == "..":
        text = ""
    text = CONTROL_CHARACTERS.sub("", text)
    return re.sub(r"[\\/]+", "/", text)


def strip_ldap_injection(text: str) -> str:
    return LDAP_METACHARACTERS.sub("", text)


# Category -> (detection patterns, rewrite rule), in rewrite order
THREAT_CATEGORIES: Dict[str, Tuple[Tuple[Pattern, ...], Callable[[str], str]]] = {
    SQL_INJECTION: (SQL_INJECTION_PATTERNS, strip_sql_injection),
    XSS: (XSS_PATTERNS, strip_xss),
    COMMAND_INJECTION: (COMMAND_INJECTION_PATTERNS, strip_command_injection),
    PATH_TRAVERSAL: (PATH_TRAVERSAL_PATTERNS, strip_path_traversal),
    LDAP_INJECTION: (LDAP_INJECTION_PATTERNS, strip_ldap_injection),
}


def matches_any(text: str, patterns: Iterable[Pattern]) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def detect_threats(text: str, categories: Iterable[str]) -> List[str]:
    """Return the categories, in table order, whose pattern set matches ``text``."""
    enabled = set(categories)
    return [
        category
        for category, (patterns, _) in THREAT_CATEGORIES.items()
        if category in enabled and matches_any(text, patterns)
    ]


def remove_threats(text: str, categories: Iterable[str]) -> str:
    """Apply the rewrite rule of every given category, in table order."""
    selected = set(categories)
    for category, (_, rewrite) in THREAT_CATEGORIES.items():
        if category in selected:
            text = rewrite(text)
    return text
