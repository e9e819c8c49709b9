"""Connectivity probing for network locations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from commasync.core.errors import RemoteAuthError, RemoteError
from commasync.core.models import NetworkLocation
from commasync.transfer.targets import TargetFactory

ProbeStatus = Literal["valid", "unreachable", "auth_failed"]


@dataclass(frozen=True, slots=True)
class ProbeResult:
    status: ProbeStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "valid"


class ConnectivityProber:
    """Runs one bounded reachability and authentication check per call.

    SMB locations get a share listing, SSH locations a no-op ``exit``. There
    is no internal retry; callers decide whether to try again.
    """

    def __init__(self, target_factory: TargetFactory, logger: logging.Logger | None = None) -> None:
        self.target_factory = target_factory
        self.logger = logger or logging.getLogger(__name__)

    def probe(self, location: NetworkLocation) -> ProbeResult:
        log_extra = {"route": "-"}
        target = self.target_factory(location)
        try:
            target.check(log_extra)
        except RemoteAuthError as exc:
            self.logger.warning("probe auth failed label=%s error=%s", location.label, exc, extra=log_extra)
            return ProbeResult("auth_failed", str(exc))
        except RemoteError as exc:
            self.logger.warning("probe unreachable label=%s error=%s", location.label, exc, extra=log_extra)
            return ProbeResult("unreachable", str(exc))

        self.logger.info(
            "probe ok label=%s protocol=%s server=%s", location.label, location.protocol, location.server, extra=log_extra
        )
        return ProbeResult("valid")
