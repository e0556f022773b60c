"""
============================================================================
UPTIME SENTINEL - VALIDATORS UTILITY
============================================================================
Syntactic URL validation and normalization. Destination safety
(DNS, address ranges, ports) lives in monitoring.safety.

License: MIT
============================================================================
"""

from urllib.parse import urlsplit, urlunsplit

import validators as external_validators

from config.constants import Limits, NetworkPolicy
from exceptions import InvalidURLError
from utils.logger import get_logger


logger = get_logger("Validators")


# ============================================================================
# URL VALIDATORS
# ============================================================================

class URLValidator:
    """
    URL validation and parsing.
    """

    @staticmethod
    def is_valid_url(url: str) -> bool:
        """
        Check if URL is a well formed http(s) URL.

        Args:
            url: URL to validate

        Returns:
            True if valid, False otherwise
        """
        if not url or len(url) > Limits.MAX_URL_LENGTH:
            return False

        scheme = urlsplit(url).scheme.lower()
        if scheme not in NetworkPolicy.ALLOWED_SCHEMES:
            return False

        # validators returns a falsy ValidationError instead of raising
        return bool(external_validators.url(url))

    @staticmethod
    def strip_fragment(url: str) -> str:
        """Drop the ``#fragment`` part of a URL."""
        parsed = urlsplit(url)
        return urlunsplit((parsed.scheme, parsed.netloc, parsed.path, parsed.query, ""))

    @staticmethod
    def normalize_url(url: str) -> str:
        """
        Normalize and validate a target URL.

        Adds an https scheme when missing, lowercases scheme and host,
        drops the fragment.

        Args:
            url: URL to normalize

        Returns:
            Normalized URL

        Raises:
            InvalidURLError: If the URL is malformed
        """
        url = (url or "").strip()
        if not url:
            raise InvalidURLError("URL cannot be empty", url=url, reason="empty")

        if len(url) > Limits.MAX_URL_LENGTH:
            raise InvalidURLError("URL is too long", url=url, reason="too_long")

        if "://" not in url:
            url = "https://" + url

        parsed = urlsplit(url)
        scheme = parsed.scheme.lower()
        if scheme not in NetworkPolicy.ALLOWED_SCHEMES:
            raise InvalidURLError(
                f"Unsupported URL scheme: {scheme}",
                url=url,
                reason="no_scheme",
            )

        if not parsed.hostname:
            raise InvalidURLError("URL has no host", url=url, reason="invalid_domain")

        netloc = parsed.netloc.rsplit("@", 1)[-1]
        host_part, sep, port_part = netloc.rpartition(":")
        if sep and port_part.isdigit() and not netloc.endswith("]"):
            netloc = f"{host_part.lower()}:{port_part}"
        else:
            netloc = netloc.lower()

        normalized = urlunsplit((scheme, netloc, parsed.path or "/", parsed.query, ""))

        if not URLValidator.is_valid_url(normalized):
            raise InvalidURLError("Invalid URL format", url=url, reason="invalid_domain")

        return normalized
