from __future__ import annotations

import base64
import binascii
from typing import Any

from kubernetes.client import V1ConfigMap, V1ObjectMeta, V1OwnerReference

CA_CERT_KEY = "caCert"


def ca_cert_payload(secret: Any) -> str:
    """Return the CA certificate stored under ``data.caCert`` of *secret* as text.

    Secret ``data`` values are base64 encoded in the API model. A missing
    field, or one that is not valid base64, yields an empty payload rather
    than an error.
    """
    data = getattr(secret, "data", None) or {}
    encoded = data.get(CA_CERT_KEY)
    if not encoded:
        return ""
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def config_map_payload(config_map: Any) -> str | None:
    data = getattr(config_map, "data", None) or {}
    return data.get(CA_CERT_KEY)


def controller_reference(secret: Any) -> V1OwnerReference:
    return V1OwnerReference(
        api_version="v1",
        kind="Secret",
        name=secret.metadata.name,
        uid=secret.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def new_config_map(name: str, namespace: str, secret: Any) -> V1ConfigMap:
    """Build the desired CA bundle ConfigMap for *namespace* from *secret*."""
    return V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            owner_references=[controller_reference(secret)],
        ),
        data={CA_CERT_KEY: ca_cert_payload(secret)},
    )


def is_controlled_by(obj: Any, owner: Any) -> bool:
    """Return True when *obj* carries a controller owner reference pointing at *owner*."""
    owner_uid = getattr(getattr(owner, "metadata", None), "uid", None)
    if not owner_uid:
        return False
    references = getattr(getattr(obj, "metadata", None), "owner_references", None) or []
    return any(
        getattr(reference, "controller", False) and getattr(reference, "uid", None) == owner_uid
        for reference in references
    )
