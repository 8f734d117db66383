"""Locate and validate the CDC COMM/DATA interface pair of a device.

A CDC-ACM function exposes two interfaces:

- COMM (class 0x02) carrying class-specific requests and an interrupt IN
  endpoint for notifications. Its extra descriptors include a Union
  functional descriptor naming the associated DATA interface.
- DATA (class 0x0A) carrying one bulk IN and one bulk OUT endpoint.

Union functional descriptor layout::

    +---------+-----------------+--------------------+--------------+-------------+
    | bLength | bDescriptorType | bDescriptorSubtype | bControlIntf | bSubordIntf |
    |  >= 5   |      0x24       |        0x06        |  COMM number | DATA number |
    +---------+-----------------+--------------------+--------------+-------------+
"""

from __future__ import annotations

from typing import NamedTuple

import usb.util

from ..errors import InterfaceResolutionError

CLASS_COMM = 0x02
CLASS_DATA = 0x0A
CS_INTERFACE = 0x24
UNION_SUBTYPE = 0x06
UNION_MIN_LENGTH = 5


class InterfacePair(NamedTuple):
    """The COMM interface and the DATA interface it controls."""

    control: object
    data: object


def resolve_interfaces(configuration) -> InterfacePair:
    """Return the validated COMM/DATA interface pair of a configuration.

    Raises:
        InterfaceResolutionError: If no COMM interface exists, it carries no
            Union descriptor, or the DATA interface it names is missing or
            does not have exactly one bulk IN and one bulk OUT endpoint.
    """
    interfaces = [intf for intf in configuration if intf.bAlternateSetting == 0]

    control = next((i for i in interfaces if i.bInterfaceClass == CLASS_COMM), None)
    if control is None:
        raise InterfaceResolutionError("Unable to find COMM interface")

    data_number = find_union_data_interface(
        control.extra_descriptors, control.bInterfaceNumber
    )
    if data_number is None:
        raise InterfaceResolutionError(
            f"COMM interface {control.bInterfaceNumber} has no Union functional descriptor"
        )

    data = next((i for i in interfaces if i.bInterfaceNumber == data_number), None)
    if data is None:
        raise InterfaceResolutionError(f"Unable to find DATA interface {data_number}")

    validate_data_interface(data)
    return InterfacePair(control=control, data=data)


def find_union_data_interface(extra: bytes, control_number: int) -> int | None:
    """Walk a class-specific descriptor chain for the Union descriptor.

    Returns:
        The subordinate (DATA) interface number, or None if no Union
        descriptor names ``control_number`` as its controlling interface.
    """
    extra = bytes(extra or b"")
    offset = 0
    while offset < len(extra):
        length = extra[offset]
        if length == 0 or offset + length > len(extra):
            raise InterfaceResolutionError(
                f"Malformed class-specific descriptor at offset {offset}"
            )
        entry = extra[offset : offset + length]
        if (
            length >= UNION_MIN_LENGTH
            and entry[1] == CS_INTERFACE
            and entry[2] == UNION_SUBTYPE
            and entry[3] == control_number
        ):
            return entry[4]
        offset += length
    return None


def validate_data_interface(interface) -> None:
    """Check that ``interface`` is a DATA interface with a bulk IN/OUT pair."""
    if interface.bInterfaceClass != CLASS_DATA:
        raise InterfaceResolutionError(
            f"Interface {interface.bInterfaceNumber} is class "
            f"0x{interface.bInterfaceClass:02x}, expected DATA (0x{CLASS_DATA:02x})"
        )

    endpoints = interface.endpoints()
    if len(endpoints) != 2:
        raise InterfaceResolutionError(
            f"DATA interface must have 2 endpoints, found {len(endpoints)}"
        )

    for ep in endpoints:
        if usb.util.endpoint_type(ep.bmAttributes) != usb.util.ENDPOINT_TYPE_BULK:
            raise InterfaceResolutionError(
                f"DATA endpoint 0x{ep.bEndpointAddress:02x} is not a bulk endpoint"
            )

    first, second = (usb.util.endpoint_direction(ep.bEndpointAddress) for ep in endpoints)
    if first == second:
        raise InterfaceResolutionError("DATA endpoints must have opposite directions")


def split_data_endpoints(interface) -> tuple[object, object]:
    """Return the ``(in, out)`` bulk endpoints of a validated DATA interface."""
    first, second = interface.endpoints()
    if usb.util.endpoint_direction(first.bEndpointAddress) == usb.util.ENDPOINT_IN:
        return first, second
    return second, first


def find_notification_endpoint(interface):
    """Return the IN endpoint of the COMM interface."""
    for ep in interface.endpoints():
        if usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_IN:
            return ep
    raise InterfaceResolutionError(
        f"Unable to find IN endpoint for COMM interface {interface.bInterfaceNumber}"
    )
