from __future__ import annotations

import json
import logging
from typing import Dict, Optional
from urllib import error as urllib_error
from urllib import request as urllib_request

from .errors import ChannelDeliveryError
from .models import NotificationMessage, Severity

DEFAULT_WEBHOOK_TIMEOUT = 10.0


class Channel:
    """A named delivery endpoint. ``send`` raises ``ChannelDeliveryError`` on failure."""

    kind = "base"

    def __init__(self, name: str):
        self.name = name

    def send(self, message: NotificationMessage) -> None:
        raise NotImplementedError


class LogChannel(Channel):
    kind = "log"

    LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.ERROR: logging.ERROR,
    }

    def __init__(self, name: str, logger_name: str = "overseer.alerts"):
        super().__init__(name)
        self.logger = logging.getLogger(logger_name)

    def send(self, message: NotificationMessage) -> None:
        self.logger.log(
            self.LEVELS.get(message.severity, logging.INFO),
            "[%s] %s\n%s",
            message.run_id,
            message.title,
            message.body,
        )


class WebhookChannel(Channel):
    """POSTs the message as JSON; any non-2xx response counts as a failure."""

    kind = "webhook"

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
    ):
        super().__init__(name)
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout

    def send(self, message: NotificationMessage) -> None:
        data = json.dumps(message.to_payload()).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        headers.update(self.headers)
        req = urllib_request.Request(url=self.url, data=data, method="POST", headers=headers)

        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.timeout)) as response:
                status = response.status
        except urllib_error.HTTPError as exc:
            raise ChannelDeliveryError(f"{self.name}: webhook returned HTTP {exc.code}.") from exc
        except urllib_error.URLError as exc:
            raise ChannelDeliveryError(f"{self.name}: webhook unreachable ({exc.reason}).") from exc
        except OSError as exc:
            raise ChannelDeliveryError(f"{self.name}: webhook request failed ({exc}).") from exc
        if not 200 <= status < 300:
            raise ChannelDeliveryError(f"{self.name}: webhook returned HTTP {status}.")
