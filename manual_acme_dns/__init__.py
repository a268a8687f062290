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
"""
manual_acme_dns issues a certificate for a single domain through the ACME DNS-01 challenge. The operator publishes
the TXT record by hand; the run waits for them, confirms the record is visible in DNS, and only then asks the CA to
validate it. Although this module is intended for use with Let's Encrypt, it will support any CA utilizing the ACME
v2 protocol.
"""
import contextlib
import enum
import logging
import pathlib
import threading
from typing import NamedTuple

from . import checkpoint as checkpoints
from . import config
from . import errors
from . import gateway as gateways
from . import tools
from .config import IssuanceRequest, Settings


# Constants and Variables
DNS_LABEL = '_acme-challenge'
DNS01 = 'dns-01'
__pdoc__ = {"tests": False}    # Excludes 'tests' submodule from documentation
logger = logging.getLogger(__name__)


class IssuanceState(enum.Enum):
    """The steps of an issuance run, in the only order they can be reached."""
    INIT = "init"
    REGISTERED = "registered"
    ORDER_CREATED = "order-created"
    CHALLENGE_SELECTED = "challenge-selected"
    AWAITING_OPERATOR = "awaiting-operator"
    POLLING = "polling"
    PROPAGATION_VERIFIED = "propagation-verified"
    CHALLENGE_COMPLETED = "challenge-completed"
    ISSUED = "issued"
    FAILED = "failed"


_FORWARD_ORDER = list(IssuanceState)


class ExpectedDnsRecord(NamedTuple):
    """The TXT record that must be visible in DNS before the challenge is completed."""
    host: str
    value: str
    rtype: str = "TXT"

    @classmethod
    def for_domain(cls, domain: str, value: str) -> 'ExpectedDnsRecord':
        """Builds the `_acme-challenge` record for a domain. A wildcard domain is validated at its base name."""
        return cls(host=f"{DNS_LABEL}.{tools.strip_wildcard(domain)}", value=value)


class PropagationState(NamedTuple):
    """How many DNS queries were made and whether the record was found."""
    attempt: int = 0
    verified: bool = False


class IssuedCertificate(NamedTuple):
    """The PEM encoded certificate chain and private key produced by a successful run."""
    certificate_pem: str
    private_key_pem: str

    def export_to_files(
            self,
            path: str = '.',
            certificate_name: str = 'certificate.pem',
            private_key_name: str = 'private-key.pem'
    ) -> tuple:
        """
        Writes the certificate and private key to files. The private key file is created readable by the owner only.

        Args:
            path (str): The directory path to save the files to. Defaults to the current working directory.
            certificate_name (str): The certificate file name. Defaults to `certificate.pem`.
            private_key_name (str): The private key file name. Defaults to `private-key.pem`.

        Returns:
            tuple: The absolute certificate path and private key path.

        Raises:
            manual_acme_dns.errors.InvalidPath: when the requested directory path does not exist.

        Examples:
            >>> certificate.export_to_files(path="/etc/ssl/example", certificate_name="fullchain.pem")
            ('/etc/ssl/example/fullchain.pem', '/etc/ssl/example/private-key.pem')
        """
        dir_path = pathlib.Path(path).absolute()

        # Ensure our path is an existing directory, throw an error otherwise
        if not dir_path.is_dir():
            raise errors.InvalidPath(f"Directory at '{path}' does not exist.")

        certificate_path = dir_path.joinpath(certificate_name)
        private_key_path = dir_path.joinpath(private_key_name)
        # touch() leaves the mode of an existing file unchanged
        private_key_path.touch(mode=0o600, exist_ok=True)
        private_key_path.chmod(0o600)

        with open(str(certificate_path), 'w', encoding="utf-8") as certificate_file:
            certificate_file.write(self.certificate_pem)
        with open(str(private_key_path), 'w', encoding="utf-8") as private_key_file:
            private_key_file.write(self.private_key_pem)

        return str(certificate_path), str(private_key_path)


def select_dns_challenge(offered: list):
    """
    Selects the DNS-01 challenge among the challenges of an authorization.

    Args:
        offered (list): The challenges offered by the authorization. Each has a `typ` attribute.

    Returns:
        The first challenge whose type is `dns-01`.

    Raises:
        manual_acme_dns.errors.UnsupportedChallengeError: When no DNS-01 challenge is offered.
    """
    for challenge in offered:
        if getattr(challenge, "typ", None) == DNS01:
            return challenge

    types = [getattr(challenge, "typ", "unknown") for challenge in offered]
    raise errors.UnsupportedChallengeError(f"ACME server does not offer the DNS-01 challenge (offered: {types}).")


def confirm_propagation(
        record: ExpectedDnsRecord,
        resolver: tools.TXTResolver,
        max_attempts: int = config.DEFAULT_POLL_ATTEMPTS,
        interval: float = config.DEFAULT_POLL_INTERVAL,
        cancel_event: threading.Event = None
) -> PropagationState:
    """
    Queries DNS until the expected TXT record is found or `max_attempts` queries have been made. A failed query
    counts as an attempt that did not find the record. The wait between two attempts is a fixed `interval`.

    Args:
        record (ExpectedDnsRecord): The record to look for.
        resolver (manual_acme_dns.tools.TXTResolver): Looks up the TXT records at `record.host`.
        max_attempts (int): The number of queries to make before giving up.
        interval (float): The time (in seconds) to wait between two queries.
        cancel_event (threading.Event): Aborts the wait between two queries when set.

    Returns:
        PropagationState: The attempt on which the record was found, with `verified` set.

    Raises:
        manual_acme_dns.errors.PropagationTimeoutError: When the record was not found in `max_attempts` queries.
        manual_acme_dns.errors.Cancelled: When `cancel_event` is set.
        manual_acme_dns.errors.ConfigurationError: When `max_attempts` is below 1 or `interval` is negative.

    Examples:
        >>> confirm_propagation(record, tools.DNSPythonResolver(nameservers=["8.8.8.8"]), interval=10)
        PropagationState(attempt=3, verified=True)
    """
    if max_attempts < 1:
        raise errors.ConfigurationError(f"Poll attempts must be at least 1, got {max_attempts}.")
    if interval < 0:
        raise errors.ConfigurationError(f"Poll interval cannot be negative, got {interval}.")

    cancel_event = cancel_event if cancel_event is not None else threading.Event()
    state = PropagationState()

    while state.attempt < max_attempts:
        if cancel_event.is_set():
            raise errors.Cancelled("Cancelled while waiting for DNS propagation.")

        state = state._replace(attempt=state.attempt + 1)
        try:
            values = resolver.resolve_txt(record.host)
        except errors.DNSQueryError as error:
            logger.warning(
                "DNS propagation not yet complete, retrying... (attempt %d/%d: %s)", state.attempt, max_attempts, error
            )
        else:
            if tools.txt_record_matches(values, record.value):
                logger.info("Found TXT record at '%s' (attempt %d/%d)", record.host, state.attempt, max_attempts)
                return state._replace(verified=True)
            logger.info(
                "TXT record at '%s' not found yet (attempt %d/%d)", record.host, state.attempt, max_attempts
            )

        # No wait follows the final attempt
        if state.attempt < max_attempts and cancel_event.wait(interval):
            raise errors.Cancelled("Cancelled while waiting for DNS propagation.")

    raise errors.PropagationTimeoutError(
        f"DNS propagation failed, TXT record '{record.value}' not found at '{record.host}' "
        f"after {max_attempts} attempts."
    )


def _as_text(value) -> str:
    """Returns PEM data as a string whether the gateway produced bytes or str."""
    return value.decode("utf-8") if isinstance(value, bytes) else value


class CertificateIssuer:
    """
    Drives one DNS-01 issuance from account registration to certificate retrieval. Every step runs at most once and
    in order; any failure ends the run with an `errors.IssuanceError` subclass.
    """
    # pylint: disable=too-many-instance-attributes

    def __init__(
            self,
            gateway,
            resolver: tools.TXTResolver,
            checkpoint: checkpoints.Checkpoint = None,
            max_attempts: int = config.DEFAULT_POLL_ATTEMPTS,
            interval: float = config.DEFAULT_POLL_INTERVAL,
            key_type: str = "ec256",
            cancel_event: threading.Event = None
    ):
        """
        Args:
            gateway (manual_acme_dns.gateway.ACMEGateway): Performs the ACME protocol steps.
            resolver (manual_acme_dns.tools.TXTResolver): Looks up TXT records while confirming propagation.
            checkpoint (manual_acme_dns.checkpoint.Checkpoint): Waits for the operator. Defaults to the console.
            max_attempts (int): The number of DNS queries to make before giving up on propagation.
            interval (float): The time (in seconds) between two DNS queries.
            key_type (str): The certificate private key type. Options are: [`ec256`, `ec384`, `rsa2048`, `rsa4096`]
            cancel_event (threading.Event): Set to cancel the run at its next suspension point.

        Examples:
            >>> issuer = CertificateIssuer(
            ...     gateway=gateways.ACMEGateway(),
            ...     resolver=tools.DNSPythonResolver(nameservers=["8.8.8.8", "1.1.1.1"]),
            ... )
            >>> issuer.issue_certificate(IssuanceRequest("test.example.com", "user@example.com"))
            IssuedCertificate(certificate_pem='-----BEGIN CERTIFICATE-----\\nMIIEfzCCA2egAwI...', ...)
        """
        self.gateway = gateway
        self.resolver = resolver
        self.checkpoint = checkpoint if checkpoint is not None else checkpoints.ConsoleCheckpoint()
        self.max_attempts = max_attempts
        self.interval = interval
        self.key_type = key_type
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.state = IssuanceState.INIT
        self.failure = None
        self.record = None
        self.propagation = None

    def cancel(self) -> None:
        """Requests cancellation. The run stops at its next suspension point or before its next CA side effect."""
        self.cancel_event.set()

    def issue_certificate(self, request: IssuanceRequest) -> IssuedCertificate:
        """
        Runs the full issuance for `request`.

        Args:
            request (manual_acme_dns.config.IssuanceRequest): The domain and contact email.

        Returns:
            IssuedCertificate: The certificate chain and its private key.

        Raises:
            manual_acme_dns.errors.IssuanceError: A subclass naming the failed step. The `step` attribute holds the
                state the run failed in and the collaborator error, if any, is chained as `__cause__`.
            RuntimeError: When this issuer has already been used for a run.
        """
        if self.state is not IssuanceState.INIT:
            raise RuntimeError("A CertificateIssuer performs a single run. Create a new one to issue again.")

        try:
            return self._run(request)
        except errors.IssuanceError as error:
            if error.step is None:
                error.step = self.state
            self.failure = error
            self.state = IssuanceState.FAILED
            logger.error("Issuance for '%s' failed: %s", request.domain, error)
            raise

    def _run(self, request: IssuanceRequest) -> IssuedCertificate:
        if not request.email:
            raise errors.ConfigurationError("No email provided. An email is required to register an ACME account.")

        logger.info("Registering ACME account for '%s'", request.email)
        with self._step(errors.RegistrationError, "Account registration"):
            self.gateway.create_account(request.email)
        self._advance(IssuanceState.REGISTERED)

        logger.info("Creating order for '%s'", request.domain)
        with self._step(errors.ProtocolError, "Order creation"):
            order = self.gateway.create_order(request.domain)
            authorizations = self.gateway.get_authorizations(order)
        if not authorizations:
            raise errors.ProtocolError(f"ACME server returned no authorization for '{request.domain}'.")
        if len(authorizations) > 1:
            logger.warning("Expected one authorization, got %d. Using the first.", len(authorizations))
        authorization = authorizations[0]
        self._advance(IssuanceState.ORDER_CREATED)

        with self._step(errors.ProtocolError, "Challenge listing"):
            offered = self.gateway.get_challenges(authorization)
        challenge = select_dns_challenge(offered)
        with self._step(errors.ProtocolError, "Key authorization"):
            self.record = ExpectedDnsRecord.for_domain(request.domain, self.gateway.compute_key_authorization(challenge))
        self._advance(IssuanceState.CHALLENGE_SELECTED)

        self._advance(IssuanceState.AWAITING_OPERATOR)
        with self._step(errors.Cancelled, "Operator checkpoint"):
            self.checkpoint.wait_for_operator(self.record, self.cancel_event)
        self._raise_if_cancelled("Cancelled while waiting for the DNS record to be published.")

        self._advance(IssuanceState.POLLING)
        logger.info("Verifying DNS propagation of '%s'", self.record.host)
        with self._step(errors.PropagationTimeoutError, "DNS propagation check"):
            self.propagation = confirm_propagation(
                self.record, self.resolver, self.max_attempts, self.interval, self.cancel_event
            )
        self._advance(IssuanceState.PROPAGATION_VERIFIED)

        self._raise_if_cancelled("Cancelled before the challenge was completed.")
        logger.info("DNS propagation verified, completing challenge...")
        with self._step(errors.ChallengeFailedError, "Challenge completion"):
            self.gateway.verify_challenge(authorization, challenge)
            self.gateway.complete_challenge(challenge)
            self.gateway.wait_for_valid_status(challenge)
        self._advance(IssuanceState.CHALLENGE_COMPLETED)

        self._raise_if_cancelled("Cancelled before the order was finalized.")
        logger.info("Challenge valid, finalizing order for '%s'", request.domain)
        with self._step(errors.FinalizationError, "Finalization"):
            private_key, csr = self.gateway.generate_csr_and_key(request.domain, key_type=self.key_type)
            order = self.gateway.finalize_order(order, csr)
            certificate = self.gateway.get_certificate(order)
        self._advance(IssuanceState.ISSUED)

        logger.info("Certificate issued for '%s'", request.domain)
        return IssuedCertificate(certificate_pem=_as_text(certificate), private_key_pem=_as_text(private_key))

    @contextlib.contextmanager
    def _step(self, error_cls, action: str):
        """Wraps collaborator failures in the step's error class. Errors that already end a run pass through."""
        try:
            yield
        except errors.IssuanceError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise error_cls(f"{action} failed: {error}", step=self.state) from error

    def _advance(self, state: IssuanceState) -> None:
        """Moves the run forward. Moving back to an earlier or the same state is a programming error."""
        if _FORWARD_ORDER.index(state) <= _FORWARD_ORDER.index(self.state):
            raise RuntimeError(f"Cannot move from '{self.state.value}' to '{state.value}'.")
        logger.debug("Issuance state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _raise_if_cancelled(self, message: str) -> None:
        if self.cancel_event.is_set():
            raise errors.Cancelled(message)


def build_resolver(settings: Settings) -> tools.TXTResolver:
    """Creates the TXT resolver selected by `settings.dns_check`."""
    if settings.dns_check == "dig":
        return tools.DigResolver(nameservers=settings.nameservers)
    return tools.DNSPythonResolver(
        nameservers=settings.nameservers,
        authoritative=settings.authoritative,
        round_robin=len(settings.nameservers) > 1
    )


def build_issuer(
        settings: Settings,
        checkpoint: checkpoints.Checkpoint = None,
        cancel_event: threading.Event = None
) -> CertificateIssuer:
    """
    Creates a CertificateIssuer wired to a real ACME server and DNS resolver.

    Args:
        settings (manual_acme_dns.config.Settings): The directory, DNS and polling options.
        checkpoint (manual_acme_dns.checkpoint.Checkpoint): Waits for the operator. Defaults to the console.
        cancel_event (threading.Event): Set to cancel the run.

    Returns:
        CertificateIssuer: An issuer ready for a single run.
    """
    return CertificateIssuer(
        gateway=gateways.ACMEGateway(directory=settings.directory, verify_ssl=settings.verify_ssl),
        resolver=build_resolver(settings),
        checkpoint=checkpoint,
        max_attempts=settings.poll_attempts,
        interval=settings.poll_interval,
        key_type=settings.key_type,
        cancel_event=cancel_event
    )
