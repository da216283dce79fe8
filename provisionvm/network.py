"""Egress identity probes: pre-tunnel direct check and post-tunnel verification."""

import ipaddress
import time
from urllib.parse import urlparse

import dns.exception
import dns.resolver
import httpx

from .errors import DnsUnavailable, NotDirect, OracleError, SameRegion, StillDirect
from .types import EgressIdentity
from .utils import log, warn

ORACLE_RETRIES = 3
ORACLE_DELAY = 2


def resolve_dns_a(domain: str, nameserver: str | None = None) -> str | None:
    """Resolve domain to IPv4 address.

    :param nameserver: DNS nameserver IP (default: system resolver)
    :return: First A record IP or None
    """
    try:
        resolver = dns.resolver.Resolver()
        if nameserver:
            resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A")
        return str(answer[0]) if answer else None
    except dns.exception.DNSException:
        return None


class Oracle:
    """External IP/geolocation service returning JSON with ``ip`` and ``country``."""

    def __init__(
        self,
        url: str,
        *,
        probe_host: str | None = None,
        timeout: float = 10.0,
        retries: int = ORACLE_RETRIES,
        delay: float = ORACLE_DELAY,
        client: httpx.Client | None = None,
        sleep=time.sleep,
    ):
        self.url = url
        self.probe_host = probe_host or urlparse(url).hostname
        self.timeout = timeout
        self.retries = max(1, retries)
        self.delay = delay
        self._client = client
        self._sleep = sleep

    def check_dns(self) -> str:
        """:raises DnsUnavailable: If the probe host does not resolve"""
        ip = resolve_dns_a(self.probe_host)
        if not ip:
            raise DnsUnavailable(f"Cannot resolve '{self.probe_host}': DNS or network unavailable")
        return ip

    def _get(self) -> httpx.Response:
        if self._client is not None:
            return self._client.get(self.url, timeout=self.timeout)
        with httpx.Client(follow_redirects=True) as client:
            return client.get(self.url, timeout=self.timeout)

    def observe(self) -> EgressIdentity:
        """Query the oracle, retrying transport errors.

        :raises OracleError: On HTTP error status, bad body, or exhausted retries
        """
        last_error = None
        for attempt in range(self.retries):
            try:
                response = self._get()
                break
            except httpx.TransportError as e:
                last_error = e
                warn(f"Oracle '{self.url}' unreachable ({attempt + 1}/{self.retries}): {e}")
                if attempt + 1 < self.retries:
                    self._sleep(self.delay)
            except httpx.HTTPError as e:
                raise OracleError(f"Oracle '{self.url}' request failed: {e}") from e
        else:
            raise OracleError(f"Oracle '{self.url}' unreachable: {last_error}")

        if response.status_code != 200:
            raise OracleError(f"Oracle '{self.url}' returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise OracleError(f"Oracle '{self.url}' returned non-JSON body")
        if not isinstance(data, dict):
            raise OracleError(f"Oracle '{self.url}' returned unexpected JSON")

        ip = data.get("ip")
        country = data.get("country")
        if not isinstance(ip, str) or not isinstance(country, str) or not ip or not country:
            raise OracleError(f"Oracle response lacks 'ip' or 'country': {data}")
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            raise OracleError(f"Oracle returned invalid ip: '{ip}'")
        return {"ip": ip, "country": country.upper()}


def check_endpoint_resolvable(host: str) -> None:
    """Peer endpoint hostnames must resolve while the host is still direct."""
    try:
        ipaddress.ip_address(host)
        return
    except ValueError:
        pass
    if not resolve_dns_a(host):
        raise DnsUnavailable(f"Cannot resolve peer endpoint '{host}'")


def check_direct_connectivity(
    oracle: Oracle, expected_ip: str | None, expected_region: str | None
) -> EgressIdentity:
    """Confirm the host egresses directly with its own identity.

    :param expected_ip: Host public IP (None skips the IP comparison)
    :param expected_region: Host country code (None skips the region comparison)
    :return: Observed direct identity
    :raises ConnectivityError: DnsUnavailable, OracleError or NotDirect
    """
    log("Check direct connectivity...")
    oracle.check_dns()
    identity = oracle.observe()
    if expected_ip and identity["ip"] != expected_ip:
        raise NotDirect(
            f"Egress IP is '{identity['ip']}', expected direct IP '{expected_ip}'"
        )
    if expected_region and identity["country"] != expected_region.upper():
        raise NotDirect(
            f"Egress region is '{identity['country']}', expected '{expected_region}'"
        )
    log(f"Check direct connectivity...done ('{identity['ip']}', '{identity['country']}')")
    return identity


def verify_tunneled(
    oracle: Oracle, direct_ip: str | None, home_region: str | None
) -> EgressIdentity:
    """Confirm egress now leaves through the tunnel.

    :param direct_ip: Pre-tunnel egress IP (None skips the StillDirect check)
    :param home_region: Host's own country code (None skips the SameRegion check)
    :raises VerificationError: StillDirect or SameRegion
    :raises ConnectivityError: If the oracle cannot be queried
    """
    log("Verify tunneled connectivity...")
    identity = oracle.observe()
    if direct_ip and identity["ip"] == direct_ip:
        raise StillDirect(f"Egress IP '{identity['ip']}' is still the direct IP")
    if home_region and identity["country"] == home_region.upper():
        raise SameRegion(f"Egress region '{identity['country']}' equals the host region")
    log(f"Verify tunneled connectivity...done ('{identity['ip']}', '{identity['country']}')")
    return identity
