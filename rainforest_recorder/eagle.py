# SPDX-License-Identifier: MPL-2.0
"""
Rainforest EAGLE Gateway Client Module

This module talks to a Rainforest EAGLE energy gateway over its local HTTP
API. Commands are small XML documents posted to /cgi-bin/post_manager and
the gateway answers with XML.

The instantaneous demand reading is fetched under a RetryPolicy, so that
transient network faults (the gateway drops connections and answers 503
while it is busy) do not fail the run.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, List, Optional
from xml.sax.saxutils import escape

import requests

from rainforest_recorder.retry import RetryPolicy, TransientNetworkFault, classify_fault

logger = logging.getLogger(__name__)

DEMAND_MARKER = "InstantaneousDemand"
LAST_CONTACT_PATH = "DeviceDetails/LastContact"
VARIABLE_PATH = "Components/Component/Variables/Variable"


class EagleAPIError(Exception):
    """Custom exception for EAGLE gateway errors that are not worth retrying."""
    pass


class MissingFieldError(EagleAPIError):
    """Raised when a required field is absent from a gateway response."""
    pass


@dataclass(frozen=True)
class DemandReading:
    """
    Instantaneous demand as reported by the meter.

    Attributes:
        value: Demand as reported by the gateway
        timestamp: UTC epoch seconds of the gateway's last contact with the meter
    """
    value: float
    timestamp: int


@dataclass(frozen=True)
class DeviceSummary:
    """A device known to the gateway."""
    hardware_address: str
    name: Optional[str]
    model_id: Optional[str]
    connection_status: Optional[str]
    last_contact: Optional[int]


@dataclass(frozen=True)
class VariableSummary:
    """A component variable of a device."""
    component: Optional[str]
    name: str
    value: Optional[str]
    units: Optional[str]


def _text(element: Optional[ET.Element], path: str) -> Optional[str]:
    """Stripped text at path below element, or None when absent or empty."""
    if element is None:
        return None
    found = element.find(path)
    if found is None or found.text is None:
        return None
    text = found.text.strip()
    return text or None


def _parse_document(xml_text: str) -> ET.Element:
    try:
        return ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise EagleAPIError(f"Invalid XML response: {e}")


def parse_hex_epoch(value: str) -> int:
    """
    Parse a hex-encoded epoch as sent by the gateway.

    Examples: '0x5f375bdf', '5F375BDF' -> 1597463519

    Raises:
        ValueError: If the value is not hexadecimal
    """
    return int(value, 16)


def parse_reading(xml_text: str) -> DemandReading:
    """
    Extract the demand reading from a device_query response.

    Args:
        xml_text: Response body of a device_query command

    Returns:
        DemandReading taken from the first variable whose name contains
        'InstantaneousDemand', stamped with the device's last contact time

    Raises:
        MissingFieldError: If last contact or demand is missing
        EagleAPIError: If the document or a field cannot be parsed
    """
    root = _parse_document(xml_text)

    last_contact = _text(root, LAST_CONTACT_PATH)
    if last_contact is None:
        raise MissingFieldError(f"{LAST_CONTACT_PATH} missing from response")

    demand = None
    for variable in root.iterfind(VARIABLE_PATH):
        name = _text(variable, "Name")
        if name and DEMAND_MARKER in name:
            demand = _text(variable, "Value")
            break

    if demand is None:
        raise MissingFieldError(f"{DEMAND_MARKER} missing from response")

    try:
        return DemandReading(value=float(demand), timestamp=parse_hex_epoch(last_contact))
    except ValueError as e:
        raise EagleAPIError(f"Invalid reading in response: {e}")


def parse_device_list(xml_text: str) -> List[DeviceSummary]:
    """Extract the devices from a device_list response."""
    root = _parse_document(xml_text)
    devices = []
    for device in root.iter("Device"):
        address = _text(device, "HardwareAddress")
        if address is None:
            continue
        last_contact = _text(device, "LastContact")
        try:
            last_contact_epoch = parse_hex_epoch(last_contact) if last_contact else None
        except ValueError:
            raise EagleAPIError(f"Invalid LastContact '{last_contact}' for device {address}")
        devices.append(DeviceSummary(
            hardware_address=address,
            name=_text(device, "Name"),
            model_id=_text(device, "ModelId"),
            connection_status=_text(device, "ConnectionStatus"),
            last_contact=last_contact_epoch,
        ))
    return devices


def parse_variables(xml_text: str) -> List[VariableSummary]:
    """Extract every component variable from a device_query response."""
    root = _parse_document(xml_text)
    variables = []
    for component in root.iterfind("Components/Component"):
        component_name = _text(component, "Name")
        for variable in component.iterfind("Variables/Variable"):
            name = _text(variable, "Name")
            if name is None:
                continue
            variables.append(VariableSummary(
                component=component_name,
                name=name,
                value=_text(variable, "Value"),
                units=_text(variable, "Units"),
            ))
    return variables


class EagleClient:
    """
    Client for the local HTTP API of a Rainforest EAGLE gateway.

    Attributes:
        host (str): Gateway IP address or hostname
        device_id (str): Hardware address of the meter to query
        timeout (float): Per-request timeout in seconds
        retry_policy (RetryPolicy): Retry policy for fetch_reading()
        session (requests.Session): HTTP session carrying the credentials
    """

    ENDPOINT = "/cgi-bin/post_manager"

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        device_id: str,
        timeout: float = 10,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        if not host:
            raise ValueError("Host cannot be empty")

        self.host = host
        self.device_id = device_id
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.url = f"http://{host}{self.ENDPOINT}"
        self.session = requests.Session()
        self.session.auth = (username, password)
        self.session.headers.update({"Content-Type": "text/xml"})

    def _device_query_command(self) -> str:
        return (
            "<Command>"
            "<Name>device_query</Name>"
            f"<DeviceDetails><HardwareAddress>{escape(self.device_id)}</HardwareAddress></DeviceDetails>"
            "<Components><All>Y</All></Components>"
            "</Command>"
        )

    def post_command(self, command: str) -> str:
        """
        Send one XML command to the gateway.

        Args:
            command: XML command document

        Returns:
            Response body

        Raises:
            TransientNetworkFault: On a fault that is expected to clear up
            EagleAPIError: On any other request failure
        """
        try:
            logger.debug(f"Posting command to {self.url}: {command}")
            response = self.session.post(self.url, data=command, timeout=self.timeout)
            response.raise_for_status()
            return response.text

        except requests.exceptions.RequestException as e:
            kind = classify_fault(e)
            if kind is not None:
                raise TransientNetworkFault(kind, f"Request to {self.url} failed: {e}") from e
            if isinstance(e, requests.exceptions.HTTPError) and e.response is not None:
                raise EagleAPIError(
                    f"HTTP error occurred: {e.response.status_code} - {e.response.text}"
                ) from e
            raise EagleAPIError(f"Request failed: {e}") from e

    def _fetch_reading_once(self) -> DemandReading:
        body = self.post_command(self._device_query_command())
        logger.debug(f"device_query response: {body}")
        return parse_reading(body)

    def fetch_reading(self) -> DemandReading:
        """
        Fetch the current demand reading, retrying transient faults.

        Raises:
            TransientNetworkFault: If a fault persists past the retry limit
            MissingFieldError: If the response lacks demand or last contact
            EagleAPIError: On any other failure
        """
        reading = self.retry_policy.call(self._fetch_reading_once)
        logger.info(f"Demand {reading.value} at {reading.timestamp}")
        return reading

    def list_devices(self) -> List[DeviceSummary]:
        """List the devices known to the gateway."""
        body = self.post_command("<Command><Name>device_list</Name></Command>")
        return parse_device_list(body)

    def list_variables(self) -> List[VariableSummary]:
        """List every component variable of the configured device."""
        body = self.post_command(self._device_query_command())
        return parse_variables(body)

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
        logger.debug("EAGLE client session closed")

    def __enter__(self) -> 'EagleClient':
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
