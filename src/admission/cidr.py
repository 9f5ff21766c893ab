from __future__ import annotations

import ipaddress
import logging
from typing import Protocol

from admission.caller_id import normalize_number
from admission.results import AdmissionOutcome, AdmissionResult, CarrierRegistry
from control.errors import AdmissionCheckFailedError

LOGGER = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class WhitelistSource(Protocol):
    async def provider_entries(self, did: str, *, timeout: float | None = None) -> list[tuple[str, str]]: ...

    async def byo_carrier_entries(self, did: str, *, timeout: float | None = None) -> list[tuple[str, str]]: ...


def parse_source_address(value: str) -> IPAddress:
    """Parse a signaling source address as a host address.

    IPv4-mapped IPv6 addresses (``::ffff:a.b.c.d``) are unwrapped so they match
    IPv4 whitelist entries.
    """

    address = ipaddress.ip_address(value.strip())
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def effective_network(ip: str, ip_range: str | None) -> IPNetwork:
    """Build the network for a whitelist entry.

    ``ip_range`` may be ``"/24"``, ``"24"`` or empty; empty means a single host.
    Host bits in ``ip`` are masked off, so ``10.0.0.5`` + ``/24`` is ``10.0.0.0/24``.

    Raises:
        ValueError: if the address or prefix is malformed.
    """

    suffix = (ip_range or "").strip()
    if suffix and not suffix.startswith("/"):
        suffix = f"/{suffix}"
    return ipaddress.ip_network(f"{ip.strip()}{suffix}", strict=False)


def network_contains(network: IPNetwork, address: IPAddress) -> bool:
    if network.version != address.version:
        return False
    return address in network


class AdmissionGate:
    """Authorize inbound PSTN signaling by carrier IP.

    Platform-managed SIP provider entries are checked first, then customer-brought
    carrier entries. The first containing network authorizes; exhausting both
    registries without a match denies. Anything that prevents a sound decision
    (bad source address, unreadable store, malformed stored entry with no other
    match) fails closed as ``check-failed``.

    The called number is normalized to E.164 with the platform's default region
    before any lookup, and the result carries that canonical DID.
    """

    def __init__(
        self,
        whitelists: WhitelistSource,
        *,
        region: str = "US",
        timeout: float | None = None,
    ) -> None:
        self._whitelists = whitelists
        self._region = region
        self._timeout = timeout

    async def authorize(
        self,
        inbound_number: str,
        source_ip: str,
        *,
        timeout: float | None = None,
    ) -> AdmissionResult:
        deadline = timeout if timeout is not None else self._timeout
        try:
            did = normalize_number(inbound_number, self._region)
        except ValueError as exc:
            LOGGER.error("Rejecting admission: malformed inbound number %r", inbound_number)
            return AdmissionResult(AdmissionOutcome.CHECK_FAILED, detail=str(exc))

        try:
            address = parse_source_address(source_ip)
        except ValueError:
            LOGGER.error("Rejecting admission for %s: malformed source address %r", did, source_ip)
            return AdmissionResult(
                AdmissionOutcome.CHECK_FAILED,
                did=did,
                detail=f"malformed source address {source_ip!r}",
            )

        malformed: list[str] = []
        lookups = (
            (CarrierRegistry.SIP_PROVIDER, self._whitelists.provider_entries),
            (CarrierRegistry.BYO_CARRIER, self._whitelists.byo_carrier_entries),
        )
        for registry, lookup in lookups:
            try:
                entries = await lookup(did, timeout=deadline)
            except AdmissionCheckFailedError as exc:
                LOGGER.error("Whitelist lookup (%s) failed for %s: %s", registry.value, did, exc.detail)
                return AdmissionResult(AdmissionOutcome.CHECK_FAILED, registry=registry, did=did, detail=exc.detail)

            for ip, ip_range in entries:
                try:
                    network = effective_network(ip, ip_range)
                except ValueError:
                    LOGGER.error(
                        "Malformed %s whitelist entry for %s: %r%r",
                        registry.value,
                        did,
                        ip,
                        ip_range,
                    )
                    malformed.append(f"{ip}{ip_range or ''}")
                    continue
                if network_contains(network, address):
                    LOGGER.info("Authorized %s -> %s via %s %s", address, did, registry.value, network)
                    return AdmissionResult(
                        AdmissionOutcome.AUTHORIZED,
                        registry=registry,
                        network=str(network),
                        did=did,
                    )

        if malformed:
            return AdmissionResult(
                AdmissionOutcome.CHECK_FAILED,
                did=did,
                detail=f"malformed whitelist entries: {', '.join(malformed)}",
            )
        LOGGER.info("Denied %s -> %s: no whitelist entry matched", address, did)
        return AdmissionResult(AdmissionOutcome.DENIED, did=did, detail="source address is not whitelisted")
