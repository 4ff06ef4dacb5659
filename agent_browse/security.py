"""Domain blocklist and credential-safety constants."""

import random
import re
import unicodedata
from urllib.parse import SplitResult, unquote, urlsplit

DEFAULT_BLOCKED_DOMAINS: tuple[str, ...] = (
    # Banking & finance
    "chase.com",
    "bankofamerica.com",
    "wellsfargo.com",
    "citi.com",
    "citibank.com",
    "capitalone.com",
    "usbank.com",
    "pnc.com",
    "schwab.com",
    "fidelity.com",
    "vanguard.com",
    "tdameritrade.com",
    "etrade.com",
    "robinhood.com",
    "coinbase.com",
    "binance.com",
    "kraken.com",
    "paypal.com",
    "venmo.com",
    "zelle.com",
    "wise.com",
    "mercury.com",
    "brex.com",
    "stripe.com/dashboard",
    # Email
    "mail.google.com",
    "outlook.live.com",
    "outlook.office.com",
    "mail.yahoo.com",
    "proton.me",
    "protonmail.com",
    # Healthcare
    "mychart.com",
    "mychartonline.com",
    "portal.anthem.com",
    "uhc.com",
    "cigna.com",
    "aetna.com",
    "kaiser.permanente.org",
    # Government & identity
    "irs.gov",
    "ssa.gov",
    "id.me",
    "login.gov",
)

# Never copied from the source browser profile: saved passwords and autofill (cards, addresses)
PROFILE_EXCLUDED_FILES: frozenset[str] = frozenset(
    {
        "Login Data",
        "Login Data-journal",
        "Login Data For Account",
        "Login Data For Account-journal",
        "Web Data",
        "Web Data-journal",
    }
)

CDP_PORT_MIN = 10000
CDP_PORT_MAX = 64999

URL_PATTERN = re.compile(r"https?:[/\\]{2}[^\s\"'<>]+", re.IGNORECASE)
_SCHEME_PREFIX = re.compile(r"^https?://", re.IGNORECASE)

# Schemes browsers parse with a host: backslashes count as slashes and extra slashes are ignored
_SPECIAL_SCHEME = re.compile(r"^(https?|wss?|ftp):[/\\]*", re.IGNORECASE)
# Leading and trailing C0 controls and spaces are dropped by browsers
_C0_AND_SPACE = "".join(chr(code) for code in range(0x21))


def random_cdp_port() -> int:
    """Pick a random high port for CDP, well away from the conventional 9222."""
    return random.randint(CDP_PORT_MIN, CDP_PORT_MAX)


def normalize_entry(domain: str) -> str:
    """Normalise a blocklist entry: lowercase, no scheme, no trailing slash."""
    normalized = _SCHEME_PREFIX.sub("", domain.strip().lower())
    return normalized.rstrip("/")


def split_url(url: str) -> SplitResult:
    """Split ``url`` the way a browser would before picking out its host.

    For http(s), ws(s) and ftp, backslashes are treated as slashes and any run
    of slashes after the scheme introduces the authority, so
    ``https://chase.com\\@evil.com`` and ``https:chase.com`` both resolve to
    the host ``chase.com`` as they do in Chrome.

    Raises:
        ValueError: If the URL cannot be split (e.g. an unbalanced IPv6 bracket)
    """
    url = url.strip(_C0_AND_SPACE)
    match = _SPECIAL_SCHEME.match(url)
    if match:
        rest = url[match.end() :].replace("\\", "/")
        url = f"{match.group(1)}://{rest}"
    return urlsplit(url)


def canonical_host(hostname: str) -> str:
    """Percent-decode and IDNA-map a hostname, e.g. ``%63hase.com`` or ``ｃhase。com`` to ``chase.com``."""
    host = unquote(hostname)
    try:
        host = host.encode("idna").decode("ascii")
    except UnicodeError:
        # Labels the codec rejects (empty, over-long) still get compatibility-mapped
        host = unicodedata.normalize("NFKC", host).replace("。", ".")
    return host.lower().rstrip(".")


class Blocklist:
    """Set of hostnames and host+path prefixes that navigation and actions may not touch.

    Bare entries (``chase.com``) match the exact host or any subdomain of it.
    Entries with a path (``stripe.com/dashboard``) match by substring against
    ``host + path``, so sibling paths on the same host stay reachable.

    Mutations only live as long as the instance; nothing is written to disk.
    """

    def __init__(self, domains: tuple[str, ...] | list[str] = DEFAULT_BLOCKED_DOMAINS, extra: list[str] | None = None):
        """Initialise the blocklist.

        Args:
            domains: Base entries, used as given
            extra: Additional entries, normalised and de-duplicated
        """
        self._entries: list[str] = list(domains)
        for domain in extra or []:
            self.add(domain)

    def entries(self) -> tuple[str, ...]:
        """Current entries, in insertion order."""
        return tuple(self._entries)

    def __contains__(self, domain: object) -> bool:
        return isinstance(domain, str) and normalize_entry(domain) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def is_blocked(self, url: str) -> str | None:
        """Return the entry that blocks ``url``, or None if it is allowed.

        Strings that do not parse as absolute URLs with a host are allowed:
        relative paths and free-form text must not be spuriously blocked.

        Args:
            url: Candidate URL

        Returns:
            The matching blocklist entry, or None
        """
        try:
            parsed = split_url(url)
            hostname = parsed.hostname
        except ValueError:
            return None

        if not parsed.scheme or not hostname:
            return None

        hostname = canonical_host(hostname)
        full_path = hostname + (parsed.path or "/")

        for domain in self._entries:
            if "/" in domain:
                if domain in full_path:
                    return domain
            elif hostname == domain or hostname.endswith("." + domain):
                return domain
        return None

    def is_action_blocked(self, action: str) -> str | None:
        """Return the first blocked entry referenced by a URL embedded in ``action``.

        Heuristic check for free-form instructions such as
        "go to https://chase.com and log in".
        """
        for match in URL_PATTERN.finditer(action):
            blocked = self.is_blocked(match.group(0))
            if blocked:
                return blocked
        return None

    def add(self, domain: str) -> str:
        """Add an entry (idempotent).

        Returns:
            The normalised entry
        """
        normalized = normalize_entry(domain)
        if normalized and normalized not in self._entries:
            self._entries.append(normalized)
        return normalized

    def remove(self, domain: str) -> bool:
        """Remove an entry.

        Returns:
            True if the entry existed
        """
        normalized = normalize_entry(domain)
        if normalized in self._entries:
            self._entries.remove(normalized)
            return True
        return False
