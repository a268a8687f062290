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
"""Custom exception classes for manual_acme_dns."""


class IssuanceError(Exception):
    """
    Base class for every error that ends an issuance run. The `step` attribute holds the
    `manual_acme_dns.IssuanceState` the run was in when it failed, if known.
    """
    def __init__(self, message: str, step=None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step is None:
            return self.message
        return f"[{self.step.value}] {self.message}"


class ConfigurationError(IssuanceError):
    """Error occurs when required input is missing or malformed. Raised before any network call."""


class RegistrationError(IssuanceError):
    """Error occurs when the ACME server refuses or fails the account registration"""


class ProtocolError(IssuanceError):
    """Error occurs when the ACME server returns an unexpected response shape (e.g. no authorization)"""


class UnsupportedChallengeError(IssuanceError):
    """Error occurs when the requested ACME server does not offer the DNS-01 challenge"""


class PropagationTimeoutError(IssuanceError):
    """Error occurs when the expected TXT record was not observed within the allowed attempts"""


class ChallengeFailedError(IssuanceError):
    """Error occurs when the ACME server rejects the DNS-01 validation"""


class FinalizationError(IssuanceError):
    """Error occurs when CSR generation, order finalization or certificate retrieval fails"""


class Cancelled(IssuanceError):
    """Error occurs when the run is cancelled at a suspension point"""


class DNSQueryError(Exception):
    """Error occurs when a TXT lookup fails for a transient reason (timeout, no nameservers, tool failure)"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidKeyType(Exception):
    """Error occurs when the requested private key rtype is unsupported"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidAccount(Exception):
    """Error occurs when requests are made to the ACME server without registration"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidPath(Exception):
    """Error occurs when a request file path does not exist"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ACMETimeout(Exception):
    """Error occurs when the max time has been exceeded waiting for an ACME server event"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
