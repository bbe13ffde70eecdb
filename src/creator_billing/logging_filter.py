"""
Logging Filter for payment data redaction
Masks subscriber emails, card and account numbers, processor authorization
codes and secret keys before records reach a handler
"""
import hashlib
import logging
import re


class PIIRedactionFilter(logging.Filter):
    """
    Logging filter that redacts payment PII from log messages

    Redacts:
    - Email addresses (first two characters and domain kept)
    - Card numbers
    - Bank account numbers (last 4 digits kept)
    - Processor authorization codes (AUTH_...)
    - Processor secret keys (sk_live_..., sk_test_...)
    - Bearer tokens
    """

    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')

    # Card numbers: 16 digits, optionally grouped
    CC_PATTERN = re.compile(r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b')

    # Bank account numbers: 8 to 12 bare digits
    ACCOUNT_PATTERN = re.compile(r'\b\d{4,8}(\d{4})\b')

    AUTH_CODE_PATTERN = re.compile(r'\bAUTH_[A-Za-z0-9]+\b')

    SECRET_KEY_PATTERN = re.compile(r'\b(sk|rk|whsec)_(live|test)?_?[A-Za-z0-9]{8,}\b')

    BEARER_PATTERN = re.compile(r'(bearer\s+)([A-Za-z0-9_\-\.]{20,})', re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Redact the record in place

        Args:
            record: Log record to filter

        Returns:
            True (always allow the record, just modify it)
        """
        if isinstance(record.msg, str):
            record.msg = self.redact_pii(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self.redact_pii(v) if isinstance(v, str) else v
                               for k, v in record.args.items()}
            elif isinstance(record.args, (list, tuple)):
                record.args = tuple(self.redact_pii(arg) if isinstance(arg, str) else arg
                                    for arg in record.args)

        return True

    def redact_pii(self, text: str) -> str:
        """
        Redact payment PII from text

        Args:
            text: Text to redact

        Returns:
            Redacted text
        """
        if not text or not isinstance(text, str):
            return text

        redacted = self.EMAIL_PATTERN.sub(self._redact_email, text)
        redacted = self.SECRET_KEY_PATTERN.sub('***REDACTED***', redacted)
        redacted = self.BEARER_PATTERN.sub(r'\1***REDACTED***', redacted)
        redacted = self.AUTH_CODE_PATTERN.sub('AUTH_***', redacted)
        # Cards before accounts so a 16 digit run is not treated as an account
        redacted = self.CC_PATTERN.sub('XXXX-XXXX-XXXX-XXXX', redacted)
        redacted = self.ACCOUNT_PATTERN.sub(r'****\1', redacted)
        return redacted

    def _redact_email(self, match: re.Match) -> str:
        """Keep first 2 chars and domain, plus a short hash to correlate lines"""
        email = match.group(0)
        local, domain = email.split('@', 1)
        if len(local) <= 2:
            return f'**@{domain}'

        email_hash = hashlib.sha256(email.encode()).hexdigest()[:6]
        return f'{local[:2]}***{email_hash}@{domain}'


def setup_pii_redaction():
    """
    Attach the redaction filter to the root logger

    Call this during application initialization
    """
    root_logger = logging.getLogger()

    for filter_obj in root_logger.filters:
        if isinstance(filter_obj, PIIRedactionFilter):
            return

    root_logger.addFilter(PIIRedactionFilter())
