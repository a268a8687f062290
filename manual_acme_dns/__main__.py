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
"""Command line interface: `python -m manual_acme_dns` or `manual-acme-dns`."""
import argparse
import logging
import os
import signal
import sys
import threading

import dotenv

import manual_acme_dns
from manual_acme_dns import checkpoint, config, errors


logger = logging.getLogger("manual_acme_dns")


def build_parser() -> argparse.ArgumentParser:
    """Creates the argument parser. Unset options fall back to the environment, then to the defaults."""
    parser = argparse.ArgumentParser(
        prog="manual-acme-dns",
        description="Request a certificate for one domain using a manually published ACME DNS-01 TXT record."
    )
    parser.add_argument("--env-file", default=".env",
                        help="file of VAR=value lines to read before the environment (default: .env)")
    parser.add_argument("--domain", help="domain to request a certificate for (env: DOMAIN)")
    parser.add_argument("--email", help="ACME account contact email (env: EMAIL)")
    parser.add_argument("--directory", help="ACME directory URL (env: ACME_DIRECTORY, default: Let's Encrypt staging)")
    parser.add_argument("--nameserver", action="append", dest="nameservers",
                        help="DNS server to query for propagation, may be repeated (env: NAMESERVERS)")
    parser.add_argument("--dns-check", choices=config.DNS_CHECKS, help="TXT lookup strategy (env: DNS_CHECK)")
    parser.add_argument("--authoritative", action="store_true",
                        help="query the domain's authoritative nameserver (dnspython only)")
    parser.add_argument("--max-attempts", type=int, help="DNS queries before giving up (env: POLL_ATTEMPTS)")
    parser.add_argument("--interval", type=int, help="seconds between DNS queries (env: POLL_INTERVAL)")
    parser.add_argument("--key-type", choices=config.KEY_TYPES, help="certificate private key type (env: KEY_TYPE)")
    parser.add_argument("--output-dir", default=".", help="directory to write the certificate and key to")
    parser.add_argument("--certificate-name", default="certificate.pem", help="certificate file name")
    parser.add_argument("--private-key-name", default="private-key.pem", help="private key file name")
    parser.add_argument("--unattended", action="store_true",
                        help="do not wait for Enter; the record is published by other automation")
    parser.add_argument("--insecure", action="store_true", help="do not verify the ACME server's TLS certificate")
    parser.add_argument("--verbose", action="store_true", help="print DNS answers and protocol details")
    return parser


def resolve_settings(args: argparse.Namespace, environ=None) -> tuple:
    """
    Merges command line arguments over the environment.

    Returns:
        tuple: The IssuanceRequest and the Settings for the run.

    Raises:
        manual_acme_dns.errors.ConfigurationError: When an input is missing or invalid.
    """
    environ = dict(os.environ if environ is None else environ)
    overrides = {
        "DOMAIN": args.domain,
        "EMAIL": args.email,
        "ACME_DIRECTORY": args.directory,
        "NAMESERVERS": ",".join(args.nameservers) if args.nameservers else None,
        "DNS_CHECK": args.dns_check,
        "KEY_TYPE": args.key_type,
    }
    environ.update({name: value for name, value in overrides.items() if value})
    settings = config.load_settings(environ)

    return config.load_request(environ), config.Settings(
        directory=settings.directory,
        nameservers=settings.nameservers,
        dns_check=settings.dns_check,
        authoritative=args.authoritative,
        poll_attempts=args.max_attempts if args.max_attempts is not None else settings.poll_attempts,
        poll_interval=args.interval if args.interval is not None else settings.poll_interval,
        key_type=settings.key_type,
        verify_ssl=not args.insecure
    )


def install_signal_handlers(cancel_event: threading.Event) -> None:
    """
    Turns the first SIGINT or SIGTERM into a cancellation request for the running issuance. The default handlers
    are restored at that point, so a second signal stops the process even during a slow ACME request.
    """
    def handler(signum, _frame):
        logger.warning("Received %s, cancelling... (repeat to exit immediately)", signal.Signals(signum).name)
        cancel_event.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def main(argv: list = None) -> int:
    """Runs one issuance and writes the certificate and private key. Returns the process exit status."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(message)s")
    dotenv.load_dotenv(args.env_file, override=False)

    try:
        request, settings = resolve_settings(args)
    except errors.ConfigurationError as error:
        print(f"Configuration error: {error}", file=sys.stderr)
        return 1

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)
    operator = checkpoint.UnattendedCheckpoint() if args.unattended else checkpoint.ConsoleCheckpoint()
    issuer = manual_acme_dns.build_issuer(settings, checkpoint=operator, cancel_event=cancel_event)

    try:
        certificate = issuer.issue_certificate(request)
        paths = certificate.export_to_files(args.output_dir, args.certificate_name, args.private_key_name)
    except errors.IssuanceError as error:
        print(f"Failed to issue certificate for '{request.domain}': {error}", file=sys.stderr)
        return 1
    except errors.InvalidPath as error:
        print(f"Certificate issued but not saved: {error.message}", file=sys.stderr)
        print(certificate.certificate_pem)
        return 1

    print("Certificate and private key have been saved to files:")
    for path in paths:
        print(f"  {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
