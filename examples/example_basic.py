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
import sys

import manual_acme_dns
from manual_acme_dns import errors, gateway, tools

logging.basicConfig(level=logging.INFO, format="%(message)s")

# Create an issuer that talks to the ACME server. In this example, the Let's Encrypt staging environment.
issuer = manual_acme_dns.CertificateIssuer(
    gateway=gateway.ACMEGateway(directory="https://acme-staging-v02.api.letsencrypt.org/directory"),
    resolver=tools.DNSPythonResolver(nameservers=["8.8.8.8", "1.1.1.1"]),  # Nameservers to check propagation with
    max_attempts=40,  # Keep checking DNS for 40 attempts...
    interval=30,  # ...30 seconds apart (20 minutes) before giving up
)

# The issuer prints the TXT record to create and waits for Enter before it starts checking DNS.
# [ !!! CREATE THE PRINTED TXT RECORD AT YOUR DNS PROVIDER, THEN PRESS ENTER !!! ]
try:
    certificate = issuer.issue_certificate(manual_acme_dns.IssuanceRequest("test.example.com", "user@example.com"))
except errors.IssuanceError as error:
    print(f"Failed to issue certificate: {error}")
    sys.exit(1)

print(certificate.certificate_pem)
print(certificate.private_key_pem)
