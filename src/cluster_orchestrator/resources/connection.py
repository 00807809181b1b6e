"""
Cluster connection handed to downstream modules.

A consumer such as a namespace receives three values once its cluster is
ready: the API endpoint, an authentication token, and the CA certificate.
The certificate travels base64 encoded and is decoded here, before use.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Mapping

from cluster_orchestrator.core.errors import PermanentProviderError


@dataclass(frozen=True)
class ClusterConnection:
    endpoint: str
    token: str = field(repr=False)
    ca_certificate: bytes = field(repr=False)

    @classmethod
    def from_attributes(
        cls,
        attrs: Mapping[str, Any],
        address: str | None = None,
    ) -> "ClusterConnection":
        """
        Build a connection from resolved resource attributes.

        Expected keys: host, token, cluster_ca_certificate.
        Raises PermanentProviderError when a value is missing or the
        certificate is not valid base64. Retrying would not fix either.
        """

        missing = [k for k in ("host", "token", "cluster_ca_certificate") if not attrs.get(k)]
        if missing:
            raise PermanentProviderError(
                f"cluster connection is missing {', '.join(missing)}", address=address
            )

        raw_ca = attrs["cluster_ca_certificate"]
        try:
            ca = base64.b64decode(str(raw_ca), validate=True)
        except (binascii.Error, ValueError) as e:
            raise PermanentProviderError(
                f"cluster_ca_certificate is not valid base64: {e}", address=address
            ) from e

        return cls(endpoint=str(attrs["host"]), token=str(attrs["token"]), ca_certificate=ca)

    def to_kubeconfig(self, cluster_name: str) -> dict[str, Any]:
        """Render a minimal kubeconfig document for this connection."""
        ca_b64 = base64.b64encode(self.ca_certificate).decode("ascii")
        user = f"{cluster_name}-admin"
        cluster = {"server": self.endpoint, "certificate-authority-data": ca_b64}
        return {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [{"name": cluster_name, "cluster": cluster}],
            "users": [{"name": user, "user": {"token": self.token}}],
            "contexts": [
                {"name": cluster_name, "context": {"cluster": cluster_name, "user": user}},
            ],
            "current-context": cluster_name,
        }
