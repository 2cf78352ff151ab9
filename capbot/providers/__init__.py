"""Provisioner adapters for the cloud provider."""

from capbot.providers.base import Provisioner
from capbot.providers.oci_cli import OciCliProvisioner

__all__ = ["Provisioner", "OciCliProvisioner"]
