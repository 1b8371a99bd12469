"""
Redaction of secrets and recipient PII for audit logs.

Audit rows outlive the actions they describe and are shown in the CLI,
so event data is scrubbed before it is serialized:
- Key-based: fields named like 'password', 'token', 'api_key' are replaced
- Pattern-based: detect-secrets format plugins (AWS, Stripe, JWT, ...)
  plus env-var and Bearer patterns
  catch credentials embedded in free text (error messages, results)
- PII: recipient emails and phone numbers are masked, not removed, so an
  operator can still tell outreach rows apart

Per project patterns:
- Industry-standard detect-secrets library (not hand-rolled regex)
- Recursive handling of nested dictionaries
- Case-insensitive key matching for sensitive field names
"""

import re
from typing import Any

from detect_secrets.core.scan import scan_line
from detect_secrets.settings import transient_settings

REDACTED = "[REDACTED]"

# Format-based detectors only; no entropy plugins.
SCAN_CONFIG = {
    "plugins_used": [
        {"name": "AWSKeyDetector"},
        {"name": "BasicAuthDetector"},
        {"name": "GitHubTokenDetector"},
        {"name": "JwtTokenDetector"},
        {"name": "PrivateKeyDetector"},
        {"name": "SlackDetector"},
        {"name": "StripeDetector"},
        {"name": "TwilioKeyDetector"},
    ],
}


def mask_email(value: str) -> str:
    """Mask the local part of an email address: jane@shop.com -> j***@shop.com."""
    local, sep, domain = value.partition("@")
    if not sep:
        return mask_phone(value)
    return f"{local[:1]}***@{domain}"


def mask_phone(value: str) -> str:
    """Keep only the last four digits of a phone number."""
    digits = re.sub(r"\D", "", value)
    return f"***{digits[-4:]}" if len(digits) > 4 else "***"


class SecretRedactor:
    """
    Redacts secrets and masks recipient PII before audit logging.

    Example:
        redactor = SecretRedactor()
        safe_data = redactor.redact_dict({
            'api_token': 'shpat_123',
            'recipient_email': 'jane@shop.com',
            'error': 'call failed: Authorization: Bearer abc.def',
        })
        # Results in:
        # {
        #     'api_token': '[REDACTED]',
        #     'recipient_email': 'j***@shop.com',
        #     'error': 'call failed: Authorization: Bearer [REDACTED]',
        # }
    """

    # Sensitive key names (case-insensitive)
    SENSITIVE_KEYS = {
        "password",
        "passwd",
        "secret",
        "token",
        "api_key",
        "apikey",
        "api_token",
        "access_token",
        "refresh_token",
        "bearer",
        "authorization",
        "credentials",
        "private_key",
        "cookie",
        "jwt",
    }

    EMAIL_KEYS = {"email", "recipient_email", "customer_email"}
    PHONE_KEYS = {"phone", "recipient_phone", "customer_phone"}

    ENV_VAR_PATTERN = re.compile(
        r"(API_KEY|APIKEY|TOKEN|PASSWORD|SECRET)=([^\s]+)", re.IGNORECASE
    )
    BEARER_PATTERN = re.compile(r"Bearer\s+([^\s]+)", re.IGNORECASE)
    EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")

    def redact_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Redact secrets from a dictionary, recursing into dicts and lists.

        Args:
            data: Dictionary potentially containing secrets or PII

        Returns:
            A new dictionary; the input is not modified
        """
        if not isinstance(data, dict):
            return data

        result: dict[str, Any] = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if lowered in self.SENSITIVE_KEYS:
                result[key] = REDACTED
            elif isinstance(value, dict):
                result[key] = self.redact_dict(value)
            elif isinstance(value, list):
                result[key] = [self._redact_value(lowered, item) for item in value]
            else:
                result[key] = self._redact_value(lowered, value)
        return result

    def _redact_value(self, key: str, value: Any) -> Any:
        if isinstance(value, dict):
            return self.redact_dict(value)
        if not isinstance(value, str):
            return value
        if key in self.EMAIL_KEYS:
            return mask_email(value)
        if key in self.PHONE_KEYS:
            return mask_phone(value)
        return self.redact_string(value)

    def redact_string(self, value: str) -> str:
        """
        Redact credentials and mask emails inside free text.

        Only detect-secrets' format plugins run here. The entropy plugins
        flag ordinary words once a line is scanned out of file context.

        Args:
            value: String potentially containing secrets

        Returns:
            String with secrets replaced by '[REDACTED]'
        """
        if not value:
            return value

        result = value
        found_values: set[str] = set()
        with transient_settings(SCAN_CONFIG):
            for line in value.splitlines():
                for found in scan_line(line):
                    if found.secret_value:
                        found_values.add(found.secret_value)
        for secret in sorted(found_values, key=len, reverse=True):
            result = re.sub(
                rf"(?<![\w/+=-]){re.escape(secret)}(?![\w/+=-])", REDACTED, result
            )

        result = self.ENV_VAR_PATTERN.sub(rf"\1={REDACTED}", result)
        result = self.BEARER_PATTERN.sub(f"Bearer {REDACTED}", result)
        result = self.EMAIL_PATTERN.sub(lambda m: mask_email(m.group(0)), result)
        return result
