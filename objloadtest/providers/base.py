"""Provider Capability Interface — the contract every storage adapter fulfils.

Boolean administrative methods return ``True`` on success, ``False``
when the service definitively refused, and ``None`` when the outcome
could not be determined (transport error).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from objloadtest.config import RunConfig
    from objloadtest.http_batch import BatchResult


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static limits and features of a storage backend."""

    multipart_supported: bool = False
    multipart_min_segment: int | None = None
    multipart_max_segment: int | None = None
    upload_max_size: int | None = None
    range_requests_supported: bool = True


@dataclass(frozen=True)
class TransferTarget:
    """A provider-issued URL and headers for a download or upload.

    The URL and header values may contain ``{size}``, ``{part}`` and
    ``{part_base64}`` tokens. ``headers`` is either one mapping shared by
    every request or a sequence with one mapping per part; ``part_urls``
    optionally gives a distinct URL per part.
    """

    url: str
    method: str | None = None
    headers: Mapping[str, str] | Sequence[Mapping[str, str]] = field(
        default_factory=dict,
    )
    part_urls: Sequence[str] | None = None

    @property
    def is_http(self) -> bool:
        return self.url.lower().startswith(("http://", "https://"))

    def url_for(self, index: int) -> str:
        """URL for the zero-based part ``index``."""
        if self.part_urls and index < len(self.part_urls):
            return self.part_urls[index]
        return self.url

    def headers_for(self, index: int) -> dict[str, str]:
        """Headers for the zero-based part ``index``."""
        if isinstance(self.headers, Mapping):
            return dict(self.headers)
        if index < len(self.headers):
            return dict(self.headers[index])
        return dict(self.headers[0]) if self.headers else {}


class StorageProvider(ABC):
    """Base class for storage backend adapters."""

    name: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities()

    def __init__(self, config: RunConfig) -> None:
        self.config = config

    @abstractmethod
    def authenticate(self) -> bool | None:
        """Verify credentials once before the run."""

    @abstractmethod
    def container_exists(self, container: str) -> bool | None:
        ...

    @abstractmethod
    def create_container(
        self, container: str, storage_class: str | None = None,
    ) -> bool | None:
        ...

    @abstractmethod
    def delete_container(self, container: str) -> bool | None:
        ...

    @abstractmethod
    def object_exists(self, container: str, name: str) -> bool | None:
        ...

    @abstractmethod
    def get_object_size(self, container: str, name: str) -> int | None:
        ...

    @abstractmethod
    def delete_object(self, container: str, name: str) -> bool | None:
        ...

    @abstractmethod
    def init_download(
        self, container: str, name: str,
    ) -> TransferTarget | None:
        """Issue the URL and headers for a GET of ``name``."""

    @abstractmethod
    def init_upload(
        self,
        container: str,
        name: str,
        size: int,
        *,
        encryption: str | None = None,
        storage_class: str | None = None,
        parts: int | None = None,
    ) -> TransferTarget | None:
        """Issue the URL(s) and headers for uploading ``name``.

        Args:
            container: Target container.
            name: Object name.
            size: Total object size in bytes.
            encryption: Optional encryption hint (e.g. ``aes256``).
            storage_class: Optional storage class hint.
            parts: Part count when a multipart upload is requested.
        """

    def complete_multipart_upload(
        self, container: str, name: str, batch: BatchResult,
    ) -> bool | None:
        """Commit a multipart upload from the ordered part results."""
        return True

    def abort_multipart_upload(
        self, container: str, name: str, target: TransferTarget,
    ) -> bool | None:
        """Discard a multipart upload whose parts did not all succeed."""
        return True
