"""
Data models for the BitwardenSecret custom resource.

This module defines the structures read from and written to the cluster:
- BitwardenSecret: the namespaced custom resource envelope
- BitwardenSecretSpec: desired state (target secret + content entries)
- ContentEntry: one mapping rule from a vault item to a secret key
- BitwardenSecretStatus: status subresource written after a successful pass

Field names on the wire are camelCase; attributes are snake_case.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

CRD_GROUP = "bitwarden-secret-operator.io"
CRD_VERSION = "v1beta1"
CRD_KIND = "BitwardenSecret"
CRD_PLURAL = "bitwardensecrets"
CRD_API_VERSION = f"{CRD_GROUP}/{CRD_VERSION}"

OPERATOR_HASH_LABEL = "bitwarden-secret-operator-rs.io/hash"
OPERATOR_LAST_UPDATE_LABEL = "bitwarden-secret-operator-rs.io/last-update"

ResourceKey = Tuple[str, str]

_FRACTION_RE = re.compile(r"\.(\d+)")


class BitwardenSecretError(Exception):
    """Base class for errors caused by a resource's own configuration."""


class MissingBitwardenId(BitwardenSecretError):
    def __init__(self, secret_key: str):
        self.secret_key = secret_key
        super().__init__(f"The given Kubernetes secret key seems misconfigured {secret_key}")


class FieldNotFound(BitwardenSecretError):
    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Bitwarden Item field: {field_name} not found")


class WrongValues(BitwardenSecretError):
    def __init__(self, bitwarden_id: str, field_name: str):
        self.bitwarden_id = bitwarden_id
        self.field_name = field_name
        super().__init__(f"Bitwarden Item: {bitwarden_id}, error on field: {field_name}")


class InvalidResource(BitwardenSecretError):
    """The raw object does not match the BitwardenSecret schema."""


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidResource(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def _optional_str_map(data: Mapping[str, Any], key: str) -> Optional[Dict[str, str]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise InvalidResource(f"'{key}' must be a mapping")
    result = {}
    for k, v in value.items():
        if not isinstance(k, str) or not isinstance(v, str):
            raise InvalidResource(f"'{key}' must map strings to strings")
        result[k] = v
    return result


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp; anything unreadable yields None."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only accepts 3 or 6 fractional digits
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Render a UTC timestamp the way the status subresource stores it."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ContentEntry:
    kubernetes_secret_key: str
    bitwarden_id: Optional[str] = None
    bitwarden_secret_field: Optional[str] = None
    bitwarden_use_note: Optional[bool] = None
    kubernetes_secret_value: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContentEntry":
        if not isinstance(data, Mapping):
            raise InvalidResource("content entries must be objects")

        key = data.get("kubernetesSecretKey")
        if not isinstance(key, str) or not key:
            raise InvalidResource("content entry is missing 'kubernetesSecretKey'")

        use_note = data.get("bitwardenUseNote")
        if use_note is not None and not isinstance(use_note, bool):
            raise InvalidResource("'bitwardenUseNote' must be a boolean")

        return cls(
            kubernetes_secret_key=key,
            bitwarden_id=_optional_str(data, "bitwardenId"),
            bitwarden_secret_field=_optional_str(data, "bitwardenSecretField"),
            bitwarden_use_note=use_note,
            kubernetes_secret_value=_optional_str(data, "kubernetesSecretValue"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"kubernetesSecretKey": self.kubernetes_secret_key}
        if self.bitwarden_id is not None:
            result["bitwardenId"] = self.bitwarden_id
        if self.bitwarden_secret_field is not None:
            result["bitwardenSecretField"] = self.bitwarden_secret_field
        if self.bitwarden_use_note is not None:
            result["bitwardenUseNote"] = self.bitwarden_use_note
        if self.kubernetes_secret_value is not None:
            result["kubernetesSecretValue"] = self.kubernetes_secret_value
        return result


@dataclass(frozen=True)
class BitwardenSecretSpec:
    content: List[ContentEntry] = field(default_factory=list)
    name: Optional[str] = None
    namespace: Optional[str] = None
    secret_type: Optional[str] = None
    bitwarden_id: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    string_data: Optional[Dict[str, str]] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BitwardenSecretSpec":
        if not isinstance(data, Mapping):
            raise InvalidResource("spec must be an object")

        raw_content = data.get("content")
        if raw_content is None:
            raw_content = []
        if not isinstance(raw_content, list):
            raise InvalidResource("'content' must be a list")

        return cls(
            content=[ContentEntry.from_dict(entry) for entry in raw_content],
            name=_optional_str(data, "name"),
            namespace=_optional_str(data, "namespace"),
            secret_type=_optional_str(data, "type"),
            bitwarden_id=_optional_str(data, "bitwardenId"),
            labels=_optional_str_map(data, "labels"),
            string_data=_optional_str_map(data, "stringData"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"content": [entry.to_dict() for entry in self.content]}
        optional = {
            "name": self.name,
            "namespace": self.namespace,
            "type": self.secret_type,
            "bitwardenId": self.bitwarden_id,
            "labels": self.labels,
            "stringData": self.string_data,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result


@dataclass(frozen=True)
class BitwardenSecretStatus:
    checksum: str
    last_updated: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["BitwardenSecretStatus"]:
        """Parse the status subresource; a missing or empty status yields None."""
        if not data or not isinstance(data, Mapping):
            return None
        checksum = data.get("checksum")
        return cls(
            checksum=checksum if isinstance(checksum, str) else "",
            last_updated=parse_timestamp(data.get("last_updated")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checksum": self.checksum,
            "last_updated": format_timestamp(self.last_updated) if self.last_updated else None,
        }


@dataclass(frozen=True)
class BitwardenSecret:
    """A BitwardenSecret custom resource as delivered by the cluster API."""

    name: str
    namespace: str
    uid: str
    spec: BitwardenSecretSpec
    status: Optional[BitwardenSecretStatus] = None
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    api_version: str = CRD_API_VERSION
    kind: str = CRD_KIND

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "BitwardenSecret":
        """
        Build a resource from a raw custom object.

        Raises:
            InvalidResource: If metadata or spec do not match the schema.
        """
        if not isinstance(obj, Mapping):
            raise InvalidResource("resource must be an object")

        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            raise InvalidResource("resource metadata must carry name and namespace")

        return cls(
            name=name,
            namespace=namespace,
            uid=metadata.get("uid") or "",
            spec=BitwardenSecretSpec.from_dict(obj.get("spec") or {}),
            status=BitwardenSecretStatus.from_dict(obj.get("status")),
            resource_version=metadata.get("resourceVersion"),
            generation=metadata.get("generation"),
            api_version=obj.get("apiVersion") or CRD_API_VERSION,
            kind=obj.get("kind") or CRD_KIND,
        )

    @property
    def key(self) -> ResourceKey:
        return (self.namespace, self.name)

    @property
    def target_name(self) -> str:
        return self.spec.name or self.name

    @property
    def target_namespace(self) -> str:
        return self.spec.namespace or self.namespace

    def owner_reference(self) -> Dict[str, Any]:
        """Controller owner reference pointing at this resource."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
