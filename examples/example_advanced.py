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
import logging
import signal
import sys
import threading

import manual_acme_dns
from manual_acme_dns import checkpoint, errors, gateway, tools

verbose = "--verbose" in sys.argv
logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")


class ProviderCheckpoint(checkpoint.Checkpoint):
    """Publishes the record through your DNS provider's API instead of waiting for a person."""

    def wait_for_operator(self, record, cancel_event=None):
        print(f"Publishing {record.rtype} {record.host} = {record.value}")
        # [ !!! ADD YOUR CODE TO UPLOAD THE TOKEN TO YOUR DNS SERVER HERE !!! ]


# Give up on the whole run after one hour, and let Ctrl+C cancel it cleanly
cancel_event = threading.Event()
timer = threading.Timer(3600, cancel_event.set)
timer.start()
signal.signal(signal.SIGINT, lambda signum, frame: cancel_event.set())

# Check propagation with dig against the authoritative servers and issue an RSA certificate
issuer = manual_acme_dns.CertificateIssuer(
    gateway=gateway.ACMEGateway(directory="https://acme-staging-v02.api.letsencrypt.org/directory"),
    resolver=tools.DigResolver(nameservers=["ns1.example.com", "ns2.example.com"]),
    checkpoint=ProviderCheckpoint(),
    max_attempts=20,
    interval=15,
    key_type="rsa4096",
    cancel_event=cancel_event,
)

try:
    certificate = issuer.issue_certificate(manual_acme_dns.IssuanceRequest("*.example.com", "user@example.com"))
except errors.Cancelled:
    print("Cancelled before the certificate was issued")
    sys.exit(130)
except errors.IssuanceError as error:
    print(f"Failed at step '{error.step.value}': {error.message}")
    sys.exit(1)
finally:
    timer.cancel()

print(certificate.export_to_files("/tmp"))
