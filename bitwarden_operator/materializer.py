"""
Secret materialization.

Turns a BitwardenSecret plus the vault items fetched for it into the
concrete Kubernetes Secret the operator writes.
"""

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from bitwarden_operator.bitwarden_cli import BitwardenItem
from bitwarden_operator.planner import resolve_bitwarden_id
from bitwarden_operator.schemas import (
    OPERATOR_HASH_LABEL,
    OPERATOR_LAST_UPDATE_LABEL,
    BitwardenSecret,
    ContentEntry,
    FieldNotFound,
    MissingBitwardenId,
    WrongValues,
)

USE_NOTE_FIELD = "bitwarden_use_note"
# Kubernetes label values are limited to 63 characters
MAX_LABEL_VALUE_LENGTH = 63


@dataclass
class MaterializedSecret:
    name: str
    namespace: str
    owner_reference: Dict[str, Any]
    data: Dict[str, bytes] = field(default_factory=dict)
    string_data: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    secret_type: Optional[str] = None
    checksum: str = ""

    def to_manifest(self) -> Dict[str, Any]:
        """Render a v1/Secret body with base64 encoded data."""
        manifest: Dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": dict(self.labels),
                "ownerReferences": [dict(self.owner_reference)],
            },
            "data": {
                key: base64.b64encode(value).decode("ascii") for key, value in self.data.items()
            },
            "stringData": dict(self.string_data),
        }
        if self.secret_type:
            manifest["type"] = self.secret_type
        return manifest


def select_value(
    entry: ContentEntry, item: Optional[BitwardenItem], bitwarden_id: Optional[str]
) -> str:
    """
    Pick the value for one content entry. First match wins:

    1. literal ``kubernetesSecretValue``
    2. ``bitwardenUseNote: true`` -> the item's note
    3. ``bitwardenUseNote: false`` -> always an error
    4. ``bitwardenSecretField`` -> the field with exactly that name
    5. otherwise an error

    Raises:
        WrongValues: Note requested but absent, note use disabled, or the
            entry selects nothing.
        FieldNotFound: No field of the item has the requested name.
    """
    if entry.kubernetes_secret_value is not None:
        return entry.kubernetes_secret_value

    item_ref = bitwarden_id or ""
    if entry.bitwarden_use_note is not None:
        if entry.bitwarden_use_note and item is not None and item.note is not None:
            return item.note
        raise WrongValues(item_ref, USE_NOTE_FIELD)

    if entry.bitwarden_secret_field is not None and item is not None:
        item_field = item.get_field(entry.bitwarden_secret_field)
        if item_field is None:
            raise FieldNotFound(entry.bitwarden_secret_field)
        return item_field.value

    raise WrongValues(item_ref, USE_NOTE_FIELD)


def compute_checksum(data: Mapping[str, bytes], string_data: Mapping[str, str]) -> str:
    """SHA-256 over the secret payload, independent of key order."""
    digest = hashlib.sha256()
    for key in sorted(data):
        digest.update(b"data\0" + key.encode("utf-8") + b"\0" + data[key] + b"\0")
    for key in sorted(string_data):
        digest.update(
            b"stringData\0" + key.encode("utf-8") + b"\0" + string_data[key].encode("utf-8") + b"\0"
        )
    return digest.hexdigest()


def materialize(
    resource: BitwardenSecret,
    fetched: Mapping[str, BitwardenItem],
    now: Optional[datetime] = None,
) -> MaterializedSecret:
    """
    Build the target secret for ``resource`` from already fetched items.

    Labels are stamped in order: content hash, last update, then the
    resource's own labels, which win on collision.

    Raises:
        MissingBitwardenId: If an entry's item was not fetched.
        WrongValues: See :func:`select_value`.
        FieldNotFound: See :func:`select_value`.
    """
    spec = resource.spec
    now = now or datetime.now(timezone.utc)

    data: Dict[str, bytes] = {}
    for entry in spec.content:
        bitwarden_id = resolve_bitwarden_id(entry, spec)
        item = None
        if entry.kubernetes_secret_value is None:
            if bitwarden_id is None or bitwarden_id not in fetched:
                raise MissingBitwardenId(entry.kubernetes_secret_key)
            item = fetched[bitwarden_id]
        data[entry.kubernetes_secret_key] = select_value(entry, item, bitwarden_id).encode("utf-8")

    string_data = dict(spec.string_data or {})
    checksum = compute_checksum(data, string_data)

    labels = {
        OPERATOR_HASH_LABEL: checksum[:MAX_LABEL_VALUE_LENGTH],
        OPERATOR_LAST_UPDATE_LABEL: str(int(now.timestamp())),
    }
    labels.update(spec.labels or {})

    return MaterializedSecret(
        name=resource.target_name,
        namespace=resource.target_namespace,
        owner_reference=resource.owner_reference(),
        data=data,
        string_data=string_data,
        labels=labels,
        secret_type=spec.secret_type,
        checksum=checksum,
    )
