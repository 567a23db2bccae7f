from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional, Protocol

import boto3

from kubeplane.logger import logger as default_logger


class DnsRegistrar(Protocol):
    def register_domain(self, organization_id: int, domain: str) -> str: ...

    def unregister_domain(self, organization_id: int, domain: str) -> None: ...


def organization_domain(organization_id: int, base_domain: str) -> str:
    """The domain clusters of an organization are published under."""
    return f"org-{organization_id}.{base_domain}"


class Route53DnsRegistrar:
    """
    Keeps one Route 53 hosted zone per organization domain.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        route53_client: Any = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = route53_client or boto3.client("route53", region_name=region)
        self._logger = logger or default_logger

    def _find_zone(self, domain: str) -> Optional[Dict[str, Any]]:
        name = domain.rstrip(".") + "."
        response = self._client.list_hosted_zones_by_name(DNSName=name, MaxItems="1")
        for zone in response.get("HostedZones", []):
            if zone["Name"] == name:
                return zone
        return None

    def register_domain(self, organization_id: int, domain: str) -> str:
        """
        Creates the hosted zone of a domain unless it already exists.

        Returns:
            str: The hosted zone id.
        """
        zone = self._find_zone(domain)
        if zone is not None:
            self._logger.debug(f"Domain {domain} is already registered")
            return zone["Id"]

        response = self._client.create_hosted_zone(
            Name=domain,
            CallerReference=uuid.uuid4().hex,
            HostedZoneConfig={
                "Comment": f"kubeplane organization {organization_id}",
                "PrivateZone": False,
            },
        )
        self._logger.info(f"Registered domain {domain}")
        return response["HostedZone"]["Id"]

    def unregister_domain(self, organization_id: int, domain: str) -> None:
        """
        Deletes the hosted zone of a domain together with its record sets.

        A domain that is not registered is ignored.
        """
        zone = self._find_zone(domain)
        if zone is None:
            self._logger.debug(f"Domain {domain} is not registered")
            return

        zone_id = zone["Id"]
        paginator = self._client.get_paginator("list_resource_record_sets")
        changes = []
        for page in paginator.paginate(HostedZoneId=zone_id):
            for record_set in page["ResourceRecordSets"]:
                # The zone's own NS and SOA records go away with the zone
                if record_set["Type"] in ("NS", "SOA"):
                    continue
                changes.append({"Action": "DELETE", "ResourceRecordSet": record_set})

        if changes:
            self._client.change_resource_record_sets(
                HostedZoneId=zone_id, ChangeBatch={"Changes": changes}
            )
        self._client.delete_hosted_zone(Id=zone_id)
        self._logger.info(f"Unregistered domain {domain} of organization {organization_id}")
