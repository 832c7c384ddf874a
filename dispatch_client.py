#!/usr/bin/env python3
"""
Birthday Message Dispatch Client

This module performs the actual outbound transmission of a birthday message
to the external email service. It never raises for transport problems: every
network error, timeout or non-success response is folded into a
DispatchResult so the scheduler can record it on the delivery record.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://email-service.digitalenvision.com.au"

# ============================================================================
# DISPATCH CONFIGURATION AND RESULTS
# ============================================================================

@dataclass
class DispatchConfig:
    """Connection settings for the outbound email service"""
    base_url: str = field(default_factory=lambda: os.getenv("EMAIL_API_BASE_URL") or DEFAULT_BASE_URL)
    endpoint: str = "/send-email"
    timeout_seconds: float = 5.0
    message_template: str = "Hey, {full_name} it's your birthday."

    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.endpoint.lstrip('/')}"

@dataclass
class DispatchResult:
    """Outcome of a single dispatch attempt"""
    success: bool
    error: Optional[str] = None
    status_code: Optional[int] = None

# ============================================================================
# DISPATCH CLIENT
# ============================================================================

class DispatchClient:
    """HTTP client for the email service.

    The scheduler may call send() more than once for the same correlation id
    across retries; the id is forwarded so the service can de-duplicate.
    """

    def __init__(self, config: Optional[DispatchConfig] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or DispatchConfig()
        self.session = session or requests.Session()

    def build_payload(self, full_name: str, email: str) -> Dict[str, Any]:
        return {
            'email': email,
            'message': self.config.message_template.format(full_name=full_name),
        }

    def send(self, full_name: str, email: str, correlation_id: str) -> DispatchResult:
        """Send one birthday message and report success or the failure reason"""
        payload = self.build_payload(full_name, email)
        headers = {
            'Content-Type': 'application/json',
            'X-Correlation-ID': correlation_id,
        }

        try:
            response = self.session.post(
                self.config.url,
                json=payload,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
        except requests.Timeout:
            reason = f"Timed out after {self.config.timeout_seconds}s"
            logger.warning(f"Dispatch {correlation_id} to {email} failed: {reason}")
            return DispatchResult(success=False, error=reason)
        except requests.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            logger.warning(f"Dispatch {correlation_id} to {email} rejected: {e}")
            return DispatchResult(success=False, error=str(e) or "HTTP error", status_code=status_code)
        except requests.RequestException as e:
            logger.warning(f"Dispatch {correlation_id} to {email} failed: {e}")
            return DispatchResult(success=False, error=str(e) or e.__class__.__name__)

        logger.debug(f"Dispatch {correlation_id} accepted with status {response.status_code}")
        return DispatchResult(success=True, status_code=response.status_code)
