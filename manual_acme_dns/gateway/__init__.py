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
ACME protocol gateway. Each method is one protocol step of a DNS-01 issuance, performed synchronously against the
CA with the `acme` client library. Ordering between the steps is the caller's responsibility.
"""
import datetime
import logging
import time

import OpenSSL
import josepy as jose
from acme import challenges
from acme import client
from acme import messages
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.serialization import load_pem_private_key
from cryptography.x509.oid import NameOID

from .. import errors
from ..config import KEY_TYPES, STAGING_DIRECTORY


# Constants and Variables
DNS01 = challenges.DNS01.typ
USER_AGENT = "manual_acme_dns/1.0.0"
MAX_COMMON_NAME_LENGTH = 64
logger = logging.getLogger(__name__)


class ACMEGateway:
    """
    Performs the individual ACME protocol steps of a DNS-01 issuance against a single CA directory.
    """

    def __init__(self, directory: str = STAGING_DIRECTORY, verify_ssl: bool = True):
        """
        Args:
            directory (str): The ACME directory URL to interact with.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.

        Examples:
            >>> gateway = ACMEGateway(directory="https://acme-staging-v02.api.letsencrypt.org/directory")
            >>> gateway.create_account("example@example.com")
        """
        self.directory = directory
        self.verify_ssl = verify_ssl
        self.directory_obj = None
        self.account_key = None
        self.account = None
        self.net = None
        self.responses = {}
        self._acme_client = None

    def create_account(self, email: str) -> messages.RegistrationResource:
        """
        Registers a new ACME account at the set ACME `directory` URL with a freshly generated RSA2048 account key.
        By running this method, you are agreeing to the ACME servers terms of use.

        Args:
            email (str): The contact email for the account.

        Returns:
            acme.messages.RegistrationResource: The registered account.
        """
        rsa_key = rsa.generate_private_key(public_exponent=65537, key_size=2048, backend=default_backend())
        self.account_key = jose.JWKRSA(key=rsa_key)

        # Initialize our ACME client object
        self.net = client.ClientNetwork(self.account_key, user_agent=USER_AGENT, verify_ssl=self.verify_ssl)
        self.directory_obj = messages.Directory.from_json(self.net.get(self.directory).json())
        self.acme_client = client.ClientV2(self.directory_obj, net=self.net)

        # Complete registration
        registration = messages.NewRegistration.from_data(email=email, terms_of_service_agreed=True)
        self.account = self.acme_client.new_account(registration)
        logger.debug("Registered ACME account %s", self.account.uri)
        return self.account

    def create_order(self, domain: str) -> messages.OrderResource:
        """
        Creates a new order for a single DNS identifier. Unlike `acme.client.ClientV2.new_order()`, no CSR is
        needed yet; it is supplied later to `finalize_order()`.

        Args:
            domain (str): The domain to order a certificate for.

        Returns:
            acme.messages.OrderResource: The new order.
        """
        identifier = messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=domain)
        response = self._post(self.acme_client.directory["newOrder"], messages.NewOrder(identifiers=[identifier]))
        body = messages.Order.from_json(response.json())
        logger.debug("Created order %s for '%s'", response.headers.get("Location"), domain)
        return messages.OrderResource(body=body, uri=response.headers.get("Location"), authorizations=[])

    def get_authorizations(self, order: messages.OrderResource) -> list:
        """
        Fetches every authorization listed in an order.

        Returns:
            list: A list of acme.messages.AuthorizationResource objects, one per identifier.
        """
        authorizations = []

        for url in order.body.authorizations or ():
            response = self._post(url, None)
            authorizations.append(
                messages.AuthorizationResource(body=messages.Authorization.from_json(response.json()), uri=url)
            )

        return authorizations

    @staticmethod
    def get_challenges(authorization: messages.AuthorizationResource) -> list:
        """
        Lists the challenges offered by an authorization. Each challenge's `typ` attribute is its challenge type
        (e.g. `dns-01`).
        """
        return list(authorization.body.challenges or ())

    def compute_key_authorization(self, challenge: messages.ChallengeBody) -> str:
        """
        Computes the value that must be published as the `_acme-challenge` TXT record for a DNS-01 challenge. The
        matching challenge response is kept so the challenge can be answered later.

        Returns:
            str: The base64url encoded SHA-256 digest of the key authorization.
        """
        response, validation = challenge.chall.response_and_validation(self.acme_client.net.key)
        self.responses[challenge.chall.token] = response
        return validation

    def verify_challenge(self, authorization: messages.AuthorizationResource,
                         challenge: messages.ChallengeBody) -> challenges.ChallengeResponse:
        """
        Checks locally that the challenge response is consistent with the account key before the CA is asked to
        validate it.

        Raises:
            manual_acme_dns.errors.ChallengeFailedError: When the key authorization does not verify.
        """
        response = self._response_for(challenge)
        domain = authorization.body.identifier.value

        if not response.simple_verify(challenge.chall, domain, self.account_key.public_key()):
            raise errors.ChallengeFailedError(f"Key authorization for '{domain}' does not match the account key.")

        return response

    def complete_challenge(self, challenge: messages.ChallengeBody) -> messages.ChallengeResource:
        """Tells the ACME server the challenge is ready to be validated."""
        return self.acme_client.answer_challenge(challenge, self._response_for(challenge))

    def wait_for_valid_status(self, challenge: messages.ChallengeBody, timeout: int = 90,
                              interval: float = 2) -> messages.ChallengeBody:
        """
        Polls the challenge until the ACME server reports it as valid.

        Args:
            challenge (acme.messages.ChallengeBody): The challenge to watch.
            timeout (int): The amount of time (in seconds) to wait for the ACME server to validate the challenge.
            interval (float): The amount of time (in seconds) between two polls.

        Returns:
            acme.messages.ChallengeBody: The challenge in its `valid` state.

        Raises:
            manual_acme_dns.errors.ChallengeFailedError: When the ACME server reports the challenge as invalid.
            manual_acme_dns.errors.ACMETimeout: When the challenge is still pending after `timeout` seconds.
        """
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)

        while datetime.datetime.now() < deadline:
            challb = messages.ChallengeBody.from_json(self._post(challenge.uri, None).json())
            if challb.status == messages.STATUS_VALID:
                return challb
            if challb.status == messages.STATUS_INVALID:
                raise errors.ChallengeFailedError(f"ACME server rejected the challenge: {challb.error}")
            time.sleep(interval)

        raise errors.ACMETimeout(f"Challenge at '{challenge.uri}' was not validated within {timeout} seconds.")

    def generate_csr_and_key(self, domain: str, key_type: str = "ec256") -> tuple:
        """
        Generates a new private key and a CSR for the domain.

        Args:
            domain (str): The domain to put in the CSR common name and subject alternative name.
            key_type (str): The requested private key type. Options are: [`ec256`, `ec384`, `rsa2048`, `rsa4096`]

        Returns:
            tuple: The PEM encoded private key and the PEM encoded CSR, both as bytes.
        """
        private_key = self.generate_private_key(key_type=key_type)
        return private_key, self.generate_csr(domain, private_key)

    @staticmethod
    def generate_private_key(key_type: str = "ec256") -> bytes:
        """
        Generates a new RSA or EC private key.

        Args:
            key_type (str): The requested private key type. Options are: [`ec256`, `ec384`, `rsa2048`, `rsa4096`]

        Returns:
            bytes: The PEM encoded private key data bytes-string.

        Raises:
            manual_acme_dns.errors.InvalidKeyType: When an unknown/unsupported `key_type` is requested.
        """
        if key_type in ("ec256", "ec384"):
            curve = ec.SECP256R1() if key_type == "ec256" else ec.SECP384R1()
            key = ec.generate_private_key(curve, default_backend())
            return key.private_bytes(
                encoding=Encoding.PEM,
                format=PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=NoEncryption()
            )
        if key_type in ("rsa2048", "rsa4096"):
            key = OpenSSL.crypto.PKey()
            key.generate_key(OpenSSL.crypto.TYPE_RSA, int(key_type[3:]))
            return OpenSSL.crypto.dump_privatekey(OpenSSL.crypto.FILETYPE_PEM, key)

        raise errors.InvalidKeyType(f"Invalid private key type '{key_type}'. Options {KEY_TYPES}")

    @staticmethod
    def generate_csr(domain: str, private_key: bytes) -> bytes:
        """
        Generates a CSR for the domain signed with the given PEM private key. The common name is omitted for domains
        longer than X.509 allows in a common name; the subject alternative name always carries the domain.

        Returns:
            bytes: The PEM encoded CSR.
        """
        key = load_pem_private_key(private_key, password=None)
        attributes = []
        if len(domain) <= MAX_COMMON_NAME_LENGTH:
            attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, domain))

        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name(attributes))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(key, hashes.SHA256())
        )
        return csr.public_bytes(Encoding.PEM)

    def finalize_order(self, order: messages.OrderResource, csr: bytes) -> messages.OrderResource:
        """Submits the CSR to the order's finalize URL."""
        return self.acme_client.begin_finalization(order.update(csr_pem=csr))

    def get_certificate(self, order: messages.OrderResource, timeout: int = 90) -> str:
        """
        Waits for a finalized order to become valid and downloads its certificate.

        Args:
            order (acme.messages.OrderResource): The finalized order.
            timeout (int): The amount of time (in seconds) to wait for the ACME server to issue the certificate.

        Returns:
            str: The PEM encoded certificate chain.
        """
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
        return self.acme_client.poll_finalization(order, deadline).fullchain_pem

    def _response_for(self, challenge: messages.ChallengeBody) -> challenges.ChallengeResponse:
        """Returns the stored response for a challenge, creating it if the key authorization was not computed yet."""
        if challenge.chall.token not in self.responses:
            self.responses[challenge.chall.token] = challenge.chall.response(self.acme_client.net.key)
        return self.responses[challenge.chall.token]

    def _post(self, url: str, obj):
        """Sends a signed POST (or POST-as-GET when `obj` is None) with the newNonce URL for badNonce retries."""
        return self.acme_client.net.post(url, obj, new_nonce_url=self.acme_client.directory["newNonce"])

    @property
    def acme_client(self) -> client.ClientV2:
        """
        Getter for the `acme_client` property. This checks that the ACME client is set up whenever it's referenced.

        Returns:
            acme.client.ClientV2: The ClientV2 object needed to interact with the ACME server.

        Raises:
            manual_acme_dns.errors.InvalidAccount: When no account registration is configured for this object.
        """
        if not isinstance(self._acme_client, client.ClientV2):
            msg = "No account registration found. You must call create_account() first."
            raise errors.InvalidAccount(msg)

        return self._acme_client

    @acme_client.setter
    def acme_client(self, value: client.ClientV2):
        """
        Setter for the `acme_client` property. This ensures the acme_client is an acme.client.ClientV2 object

        Raises:
            manual_acme_dns.errors.InvalidAccount: When the `value` is not an acme.client.ClientV2 object.
        """
        if not isinstance(value, client.ClientV2):
            msg = f"Value '{value}' is not an acme.client.ClientV2 object."
            raise errors.InvalidAccount(msg)

        self._acme_client = value
