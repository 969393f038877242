"""
Contact file attachments.

Files go to an object storage provider under
``<user_id>/<contact_id>/<unique-name>.<ext>``; the contact row only keeps
FileAttachment records (name, public url, size, type, upload time).

Every file in a batch is attempted on its own. A failed file is reported and
skipped; the rest still upload.
"""
import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from .errors import DeleteAttachmentFailed, StoreError, UploadFailed
from .query import ErrorInfo, MutationResult, ContactQueries, Notifier
from .schema import Contact, FileAttachment, utc_now

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "contact-files"
MAX_UPLOAD_BYTES = 5 * 1024 * 1024


@dataclass
class UploadFile:
    """A file picked by the user, already read into memory."""
    name: str
    data: bytes
    content_type: str = ""

    @property
    def size(self) -> int:
        return len(self.data)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Storage providers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class StorageProvider:
    """Object storage with public read URLs."""

    bucket = DEFAULT_BUCKET
    base_url = ""

    def upload(self, path: str, data: bytes, content_type: str = "") -> str:
        raise NotImplementedError

    def remove(self, path: str) -> None:
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    def path_from_url(self, url: str) -> Optional[str]:
        """Object path inside the bucket, or None if ``url`` is not one of ours."""
        try:
            parsed = urlparse(url)
        except ValueError:
            return None
        match = re.match(rf"/storage/v1/object/public/{re.escape(self.bucket)}/(.+)", parsed.path)
        return match.group(1) if match else None


class SupabaseStorage(StorageProvider):
    """Storage API client (``{base_url}/storage/v1``)."""

    def __init__(self, base_url: str, api_key: str, bucket: str = DEFAULT_BUCKET,
                 access_token: Optional[str] = None, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.bucket = bucket
        self.access_token = access_token
        self.timeout = timeout

    def _headers(self) -> dict:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
        }

    def _check(self, r: requests.Response) -> None:
        if r.ok:
            return
        try:
            message = r.json().get("message") or r.text
        except ValueError:
            message = r.text
        raise StoreError(message or f"HTTP {r.status_code}")

    def upload(self, path: str, data: bytes, content_type: str = "") -> str:
        headers = self._headers()
        headers["Content-Type"] = content_type or "application/octet-stream"
        headers["x-upsert"] = "false"
        try:
            r = requests.post(
                f"{self.base_url}/storage/v1/object/{self.bucket}/{path}",
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise StoreError(str(e)) from e
        self._check(r)
        return self.public_url(path)

    def remove(self, path: str) -> None:
        try:
            r = requests.delete(
                f"{self.base_url}/storage/v1/object/{self.bucket}",
                json={"prefixes": [path]},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise StoreError(str(e)) from e
        self._check(r)


class LocalDirectoryStorage(StorageProvider):
    """Stores objects under ``root/<bucket>/``; URLs use the public-object layout."""

    def __init__(self, root: str, base_url: str = "http://localhost:3000", bucket: str = DEFAULT_BUCKET):
        self.root = Path(root).expanduser()
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket

    def _file(self, path: str) -> Path:
        target = (self.root / self.bucket / path).resolve()
        bucket_dir = (self.root / self.bucket).resolve()
        if bucket_dir not in target.parents:
            raise StoreError(f"Invalid object path: {path}")
        return target

    def upload(self, path: str, data: bytes, content_type: str = "") -> str:
        target = self._file(path)
        if target.exists():
            raise StoreError("The resource already exists")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StoreError(str(e)) from e
        return self.public_url(path)

    def remove(self, path: str) -> None:
        target = self._file(path)
        try:
            target.unlink()
        except FileNotFoundError:
            raise StoreError("Object not found")
        except OSError as e:
            raise StoreError(str(e)) from e


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Upload / delete
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class UploadBatch:
    attachments: List[FileAttachment] = field(default_factory=list)
    failures: List[UploadFailed] = field(default_factory=list)


class AttachmentUploader:
    """Uploads files one by one and builds FileAttachment records."""

    def __init__(self, storage: StorageProvider, notifier: Optional[Notifier] = None,
                 max_bytes: int = MAX_UPLOAD_BYTES):
        self.storage = storage
        self.notifier = notifier or Notifier()
        self.max_bytes = max_bytes

    @staticmethod
    def object_path(user_id: str, contact_id: str, file_name: str) -> str:
        ext = file_name.rsplit(".", 1)[-1] if "." in file_name else "bin"
        unique = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
        return f"{user_id}/{contact_id}/{unique}.{ext}"

    def upload_one(self, user_id: str, contact_id: str, upload: UploadFile) -> FileAttachment:
        if upload.size > self.max_bytes:
            limit_mb = self.max_bytes // (1024 * 1024)
            raise UploadFailed(
                f"File {upload.name} is too large. Max size is {limit_mb}MB.", upload.name
            )
        path = self.object_path(user_id, contact_id, upload.name)
        try:
            url = self.storage.upload(path, upload.data, upload.content_type)
        except StoreError as e:
            raise UploadFailed(f"Failed to upload {upload.name}: {e}", upload.name) from e
        return FileAttachment(
            name=upload.name,
            url=url,
            size=upload.size,
            type=upload.content_type,
            uploaded_at=utc_now(),
        )

    def upload_files(self, user_id: str, contact_id: str, files: Iterable[UploadFile]) -> UploadBatch:
        batch = UploadBatch()
        for upload in files:
            try:
                batch.attachments.append(self.upload_one(user_id, contact_id, upload))
            except UploadFailed as e:
                logger.warning(e.message)
                self.notifier.error(e.message)
                batch.failures.append(e)
        if batch.attachments:
            self.notifier.success(f"{len(batch.attachments)} file(s) uploaded successfully")
        return batch

    def delete_file(self, url: str) -> None:
        path = self.storage.path_from_url(url)
        if path is None:
            raise DeleteAttachmentFailed("Invalid file URL")
        try:
            self.storage.remove(path)
        except StoreError as e:
            raise DeleteAttachmentFailed(f"Failed to delete file: {e}") from e


class ContactAttachments:
    """Keeps a contact's attachment list in step with storage."""

    def __init__(self, uploader: AttachmentUploader, contacts: ContactQueries, user_id: str):
        self.uploader = uploader
        self.contacts = contacts
        self.user_id = user_id

    async def attach(self, contact: Contact, files: Iterable[UploadFile]) -> Tuple[UploadBatch, Optional[MutationResult]]:
        files = list(files)
        batch = await asyncio.to_thread(self.uploader.upload_files, self.user_id, contact.id, files)
        if not batch.attachments:
            return batch, None
        combined = list(contact.attachments or []) + batch.attachments
        mutation = await self.contacts.update(contact.id, {"attachments": combined})
        return batch, mutation

    async def detach(self, contact: Contact, url: str) -> MutationResult:
        try:
            await asyncio.to_thread(self.uploader.delete_file, url)
        except DeleteAttachmentFailed as e:
            self.uploader.notifier.error(e.message)
            return MutationResult(error=ErrorInfo.from_exception(e))
        remaining = [a for a in contact.attachments or [] if a.url != url]
        self.uploader.notifier.success("File deleted successfully")
        return await self.contacts.update(contact.id, {"attachments": remaining})
