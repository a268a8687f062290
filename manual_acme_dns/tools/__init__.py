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
"""DNS tools to confirm the propagation of ACME verification records."""
import abc
import logging
import shlex
import subprocess

import dns.exception
import dns.rdatatype
import dns.resolver

from .. import errors


logger = logging.getLogger(__name__)


def strip_wildcard(domain: str) -> str:
    """
    Strips the wildcard portion of a domain (*.) if present.

    Args:
        domain (str): The domain string to strip wildcards from.

    Returns:
        str: The domain string without the wildcard portion.
    """
    return domain[2:] if domain.startswith("*.") else domain


def txt_record_matches(values: list, expected: str) -> bool:
    """
    Checks whether any TXT record value is exactly the expected value. Unrelated records at the same name (for
    example, tokens left over from earlier orders) do not prevent a match.

    Args:
        values (list): The TXT record values returned for a DNS name.
        expected (str): The verification token being looked for.

    Returns:
        bool: True if at least one value equals `expected`.
    """
    return any(value == expected for value in values)


class DNSQuery:
    """A basic class to make DNS queries"""

    def __init__(
        self,
        domain: str,
        rtype: str = "A",
        nameservers: list = None,
        authoritative: bool = False,
        round_robin: bool = False,
        timeout: float = 5.0
    ) -> None:
        """
        Initializes our DNS query. When `authoritative` is set, the authoritative nameserver is looked up
        immediately.

        Args:
            domain (str): The fully qualified domain name to query.
            rtype (str): The DNS request type (e.g. `A`, `TXT`, `CNAME`, etc.).
            nameservers (list): Nameservers to query when making DNS requests.
            authoritative (bool): Use the authoritative nameserver for the domain.
            round_robin (bool): rotate between each nameserver instead of the default fail-over method.
            timeout (float): The total time (in seconds) allowed for a single query.
        """
        self.round_robin = round_robin
        self.type = rtype.upper()
        self.domain = domain
        self.timeout = timeout
        self.nameservers = list(nameservers) if nameservers else dns.resolver.Resolver().nameservers
        self.nameservers = self.__get_authoritative_nameservers__() if authoritative else self.nameservers
        self.values = []
        self.last_nameserver = ""

    def resolve(self) -> list:
        """
        Queries the nameservers with our configured object values. A missing name or an empty answer is not an
        error, it simply yields no values.

        Returns:
            list: A list of DNS resolution values.

        Raises:
            dns.exception.DNSException: When the query could not be completed (timeout, no reachable nameserver).
        """
        try:
            self.values = DNSQuery.__resolve__(
                self.domain, rtype=self.type, nameservers=self.nameservers, timeout=self.timeout
            )
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            self.values = []
        finally:
            # Rotate the nameservers if round robin mode is enabled
            if self.round_robin and len(self.nameservers) > 1:
                self.last_nameserver = self.nameservers[0]
                self.nameservers = self.nameservers[1:] + [self.last_nameserver]

        return self.values

    def __get_authoritative_nameservers__(self) -> list:
        """
        Checks the SOA record of the closest enclosing zone for the authoritative nameserver of this domain.

        Returns:
            list: A list of authoritative nameserver addresses.

        Raises:
            manual_acme_dns.errors.DNSQueryError: When no enclosing zone has an SOA record.
        """
        domain_sections = self.domain.split(".")

        # Loop through each level of the subdomain to find the SOA for this FQDN.
        while domain_sections:
            domain = ".".join(domain_sections)
            try:
                primary = self.__resolve__(domain, rtype="SOA", nameservers=self.nameservers, timeout=self.timeout)
                break
            except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
                domain_sections.pop(0)
        else:
            raise errors.DNSQueryError(f"No SOA record found for any zone enclosing '{self.domain}'.")

        return self.__resolve__(primary[0], rtype="A", nameservers=self.nameservers, timeout=self.timeout)

    @staticmethod
    def __resolve__(domain: str, rtype: str = "A", nameservers: list = None, timeout: float = 5.0) -> list:
        """
        Internal function-like DNS request method.

        Returns:
             list: A list of answer values from the request.
        """
        resolver = dns.resolver.Resolver(configure=not nameservers)
        if nameservers:
            resolver.nameservers = nameservers
        resolver.lifetime = timeout

        return DNSQuery.__parse_values__(resolver.resolve(domain, rtype))

    @staticmethod
    def __filter_list__(data: list) -> list:
        """
        Filters our list properties to remove blank entries.

        Args:
            data (list): The list to remove blank entries from.
        Returns:
            list: The data list stripped of any blank entries.
        """
        return list(filter(None, data))

    @staticmethod
    def __parse_values__(answers) -> list:
        """
        Parses the value portion of each answer into its own list. TXT records made of several character-strings
        are joined back into one value.

        Args:
            answers: the rdata answers returned by the resolver.
        Returns:
            list: A parsed list of values for each answer.
        """
        values = []

        for rdata in answers:
            if rdata.rdtype == dns.rdatatype.TXT:
                values.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
            elif rdata.rdtype == dns.rdatatype.SOA:
                values.append(rdata.mname.to_text(omit_final_dot=True))
            else:
                values.append(rdata.to_text())

        return DNSQuery.__filter_list__(values)


class TXTResolver(abc.ABC):
    """Interface for anything that can look up the TXT records published at a DNS name."""

    @abc.abstractmethod
    def resolve_txt(self, hostname: str) -> list:
        """
        Looks up the TXT records for a DNS name.

        Args:
            hostname (str): The fully qualified DNS name to query.

        Returns:
            list: The content of each TXT record found. An empty list when the name has no TXT records.

        Raises:
            manual_acme_dns.errors.DNSQueryError: When the lookup could not be completed.
        """


class DNSPythonResolver(TXTResolver):
    """Looks up TXT records with dnspython."""

    def __init__(
        self,
        nameservers: list = None,
        authoritative: bool = False,
        round_robin: bool = False,
        timeout: float = 5.0
    ) -> None:
        """
        Args:
            nameservers (list): DNS server hosts to query. Defaults to the system resolver configuration.
            authoritative (bool): Identify and query the authoritative nameserver for each name instead.
            round_robin (bool): Rotate between each nameserver instead of the default failover behavior.
            timeout (float): The total time (in seconds) allowed for a single query.
        """
        self.nameservers = nameservers
        self.authoritative = authoritative
        self.round_robin = round_robin
        self.timeout = timeout
        self._queries = {}

    def resolve_txt(self, hostname: str) -> list:
        try:
            query = self._queries.get(hostname)
            if query is None:
                query = DNSQuery(
                    hostname,
                    rtype="TXT",
                    nameservers=self.nameservers,
                    authoritative=self.authoritative,
                    round_robin=self.round_robin,
                    timeout=self.timeout
                )
                self._queries[hostname] = query
            values = query.resolve()
        except dns.exception.DNSException as error:
            raise errors.DNSQueryError(f"TXT lookup for '{hostname}' failed: {error}") from error

        logger.debug("TXT values for '%s' via %s: %s", hostname, query.last_nameserver or query.nameservers, values)
        return values


class DigResolver(TXTResolver):
    """Looks up TXT records by running the external `dig` tool."""

    def __init__(self, nameservers: list = None, command: str = "dig", timeout: int = 10) -> None:
        """
        Args:
            nameservers (list): DNS server hosts to query, rotated on each lookup. Defaults to dig's own choice.
            command (str): The dig executable to run.
            timeout (int): The time (in seconds) dig may wait for an answer.
        """
        self.nameservers = list(nameservers) if nameservers else []
        self.command = command
        self.timeout = timeout

    def build_command(self, hostname: str) -> list:
        """Builds the dig argument list for a TXT lookup, rotating through the nameservers."""
        args = [self.command, "+short", f"+time={self.timeout}", "+tries=1", "TXT", hostname]
        if self.nameservers:
            nameserver = self.nameservers[0]
            self.nameservers = self.nameservers[1:] + [nameserver]
            args.append(f"@{nameserver}")
        return args

    def resolve_txt(self, hostname: str) -> list:
        args = self.build_command(hostname)
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout + 5, check=False)
        except (OSError, subprocess.TimeoutExpired) as error:
            raise errors.DNSQueryError(f"Could not run '{self.command}' for '{hostname}': {error}") from error

        if result.returncode != 0:
            msg = f"'{' '.join(args)}' exited with status {result.returncode}: {result.stderr.strip()}"
            raise errors.DNSQueryError(msg)

        values = self.parse_output(result.stdout)
        logger.debug("TXT values for '%s' via %s: %s", hostname, self.command, values)
        return values

    @staticmethod
    def parse_output(output: str) -> list:
        """
        Parses `dig +short` TXT output. Each answer line holds one or more quoted character-strings; lines that
        are not quoted (CNAME targets) are skipped and `;;` lines are dig diagnostics.

        Args:
            output (str): The standard output of dig.
        Returns:
            list: The value of each TXT record.

        Raises:
            manual_acme_dns.errors.DNSQueryError: When dig reports a problem instead of an answer.
        """
        values = []

        for line in output.splitlines():
            line = line.strip()
            if line.startswith(";;"):
                raise errors.DNSQueryError(f"dig reported: {line}")
            if not line.startswith('"'):
                continue
            try:
                values.append("".join(shlex.split(line)))
            except ValueError:
                values.append(line.strip('"'))

        return DNSQuery.__filter_list__(values)
