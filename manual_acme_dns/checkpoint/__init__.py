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
"""Operator checkpoints that pause a run until the DNS record has been published."""
import abc
import logging
import threading

from .. import errors


PROMPT = "Press Enter to continue after updating the DNS record..."
logger = logging.getLogger(__name__)


class Checkpoint(abc.ABC):
    """A point in the run where the operator publishes the expected DNS record."""

    @abc.abstractmethod
    def wait_for_operator(self, record, cancel_event: threading.Event = None) -> None:
        """
        Presents the record to publish and returns once the operator says it has been published.

        Args:
            record (manual_acme_dns.ExpectedDnsRecord): The TXT record the operator must publish.
            cancel_event (threading.Event): Set when the run is asked to stop.

        Raises:
            manual_acme_dns.errors.Cancelled: When the run is cancelled while waiting.
        """


class ConsoleCheckpoint(Checkpoint):
    """Prints the record and blocks, without a timeout, until Enter is pressed."""

    def __init__(self, input_func=input, output=print, poll_interval: float = 0.25) -> None:
        """
        Args:
            input_func (callable): Reads the operator's confirmation. Called with the prompt text.
            output (callable): Writes one line of console output.
            poll_interval (float): How often (in seconds) a pending prompt checks for cancellation.
        """
        self.input_func = input_func
        self.output = output
        self.poll_interval = poll_interval

    def display(self, record) -> None:
        """Prints the DNS record the operator must publish."""
        self.output("Add the following DNS record to your DNS provider:")
        self.output(f"Host: {record.host}")
        self.output(f"Type: {record.rtype}")
        self.output(f"Value: {record.value}")

    def wait_for_operator(self, record, cancel_event: threading.Event = None) -> None:
        self.display(record)
        answered = threading.Event()
        failures = []

        # input() runs on a daemon thread; its errors are handed back to this thread
        def prompt():
            try:
                self.input_func(PROMPT)
            except Exception as error:  # pylint: disable=broad-except
                failures.append(error)
            finally:
                answered.set()

        threading.Thread(target=prompt, name="operator-prompt", daemon=True).start()

        while not answered.wait(self.poll_interval):
            if cancel_event is not None and cancel_event.is_set():
                raise errors.Cancelled("Cancelled while waiting for the DNS record to be published.")

        if failures and isinstance(failures[0], EOFError):
            raise errors.Cancelled("Input was closed before the DNS record was confirmed.") from failures[0]
        if failures:
            raise errors.Cancelled(f"Could not read the operator's confirmation: {failures[0]}") from failures[0]


class UnattendedCheckpoint(Checkpoint):
    """Logs the record and continues immediately, for runs where the record is published by other automation."""

    def wait_for_operator(self, record, cancel_event: threading.Event = None) -> None:
        logger.info("Expecting %s record '%s' with value '%s'", record.rtype, record.host, record.value)
        if cancel_event is not None and cancel_event.is_set():
            raise errors.Cancelled("Cancelled before propagation checks started.")
