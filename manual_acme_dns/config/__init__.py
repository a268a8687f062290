# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Run inputs and environment-based configuration for manual_acme_dns."""
import os

import validators

from .. import errors
from ..tools import strip_wildcard


# Constants and Variables
STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"
PRODUCTION_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
DEFAULT_POLL_ATTEMPTS = 30
DEFAULT_POLL_INTERVAL = 30
KEY_TYPES = ["ec256", "ec384", "rsa2048", "rsa4096"]
DNS_CHECKS = ["dnspython", "dig"]


class IssuanceRequest:
    """The domain and contact email of a single issuance run. Values are validated once and cannot be changed."""

    def __init__(self, domain: str, email: str = None) -> None:
        """
        Args:
            domain (str): The domain to request a certificate for. A leading `*.` requests a wildcard certificate.
            email (str): The contact email used to register the ACME account. It may be omitted here, but a run
                without it fails before contacting the ACME server.

        Raises:
            manual_acme_dns.errors.ConfigurationError: When the domain is empty or not a valid FQDN, or when an
                email is given but is not a valid email address.
        """
        if not domain:
            raise errors.ConfigurationError("No domain found. A domain is required to request a certificate.")

        # Check that value (minus the wildcard if present) is a valid FQDN
        if not validators.domain(strip_wildcard(domain)):
            msg = f"Invalid domain name '{domain}'. Domain name must adhere to RFC2181."
            raise errors.ConfigurationError(msg)

        if email and not validators.email(email):
            raise errors.ConfigurationError(f"Value '{email}' is not a valid email address.")

        self._domain = domain
        self._email = email or None

    @property
    def domain(self) -> str:
        """The domain the certificate is requested for."""
        return self._domain

    @property
    def email(self) -> str:
        """The ACME account contact email, or None when it was not provided."""
        return self._email

    def __repr__(self) -> str:
        return f"IssuanceRequest(domain={self._domain!r}, email={self._email!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, IssuanceRequest):
            return NotImplemented
        return (self._domain, self._email) == (other.domain, other.email)

    def __hash__(self) -> int:
        return hash((self._domain, self._email))


class Settings:
    """Everything about a run other than the domain and email: where to issue from and how to check DNS."""
    # Plain settings holder, one attribute per option.
    # pylint: disable=too-many-instance-attributes,too-few-public-methods

    def __init__(
            self,
            directory: str = STAGING_DIRECTORY,
            nameservers: list = None,
            dns_check: str = "dnspython",
            authoritative: bool = False,
            poll_attempts: int = DEFAULT_POLL_ATTEMPTS,
            poll_interval: float = DEFAULT_POLL_INTERVAL,
            key_type: str = "ec256",
            verify_ssl: bool = True
    ):
        """
        Args:
            directory (str): The ACME directory URL to interact with.
            nameservers (list): A list of DNS server IP addresses to query when checking DNS propagation. `dig` also
                accepts nameserver host names.
            dns_check (str): How TXT records are looked up. Options are: [`dnspython`, `dig`]
            authoritative (bool): Query the authoritative nameserver instead of `nameservers` (dnspython only).
            poll_attempts (int): How many times DNS is queried before propagation is considered failed.
            poll_interval (float): The time (in seconds) between two DNS queries.
            key_type (str): The certificate private key type. Options are: [`ec256`, `ec384`, `rsa2048`, `rsa4096`]
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.

        Raises:
            manual_acme_dns.errors.ConfigurationError: When any option is out of range or unknown.
        """
        if dns_check not in DNS_CHECKS:
            raise errors.ConfigurationError(f"Invalid DNS check '{dns_check}'. Options {DNS_CHECKS}")
        if key_type not in KEY_TYPES:
            raise errors.ConfigurationError(f"Invalid private key type '{key_type}'. Options {KEY_TYPES}")
        if poll_attempts < 1:
            raise errors.ConfigurationError(f"Poll attempts must be at least 1, got {poll_attempts}.")
        if poll_interval < 0:
            raise errors.ConfigurationError(f"Poll interval cannot be negative, got {poll_interval}.")
        if not directory or not directory.startswith(("https://", "http://")):
            raise errors.ConfigurationError(f"Invalid ACME directory URL '{directory}'.")
        for nameserver in nameservers or ():
            if not _valid_nameserver(nameserver, allow_hostname=dns_check == "dig"):
                raise errors.ConfigurationError(f"Invalid nameserver '{nameserver}' for the {dns_check} DNS check.")

        self.directory = directory
        self.nameservers = nameservers if nameservers else []
        self.dns_check = dns_check
        self.authoritative = authoritative
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.key_type = key_type
        self.verify_ssl = verify_ssl


def _valid_nameserver(nameserver: str, allow_hostname: bool = False) -> bool:
    """Checks that a nameserver is an IPv4 or IPv6 address, or a host name where `allow_hostname` is set."""
    if validators.ipv4(nameserver) or validators.ipv6(nameserver):
        return True
    return bool(allow_hostname and validators.domain(nameserver))


def _read_int(environ, name: str, default: int) -> int:
    """Reads an integer environment variable, raising a ConfigurationError on a non-integer value."""
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as error:
        raise errors.ConfigurationError(f"{name} must be an integer, got '{value}'.") from error


def _read_list(environ, name: str) -> list:
    """Reads a comma separated environment variable as a list."""
    return [item.strip() for item in environ.get(name, "").split(",") if item.strip()]


def load_settings(environ=None) -> Settings:
    """
    Builds the run settings from environment variables.

    Args:
        environ (dict): The environment to read. Defaults to `os.environ`.

    Returns:
        manual_acme_dns.config.Settings: The settings, with defaults for anything unset.

    Raises:
        manual_acme_dns.errors.ConfigurationError: When a variable holds an invalid value.

    Examples:
        >>> load_settings({"NAMESERVERS": "8.8.8.8, 1.1.1.1", "DNS_CHECK": "dig"}).nameservers
        ['8.8.8.8', '1.1.1.1']
    """
    environ = os.environ if environ is None else environ

    return Settings(
        directory=environ.get("ACME_DIRECTORY") or STAGING_DIRECTORY,
        nameservers=_read_list(environ, "NAMESERVERS"),
        dns_check=environ.get("DNS_CHECK") or "dnspython",
        poll_attempts=_read_int(environ, "POLL_ATTEMPTS", DEFAULT_POLL_ATTEMPTS),
        poll_interval=_read_int(environ, "POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        key_type=environ.get("KEY_TYPE") or "ec256"
    )


def load_request(environ=None) -> IssuanceRequest:
    """
    Builds the issuance request from the `DOMAIN` and `EMAIL` environment variables.

    Args:
        environ (dict): The environment to read. Defaults to `os.environ`.

    Returns:
        manual_acme_dns.config.IssuanceRequest: The request. `email` is None if `EMAIL` is unset.

    Raises:
        manual_acme_dns.errors.ConfigurationError: When `DOMAIN` is missing or invalid.
    """
    environ = os.environ if environ is None else environ
    return IssuanceRequest(domain=environ.get("DOMAIN", ""), email=environ.get("EMAIL") or None)
