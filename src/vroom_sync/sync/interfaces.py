"""Interfaces for the remote services the sync engine talks to."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models import UserAccount
from .models import RemoteFile


class MirrorAdapter(ABC):
    """Interface for a spreadsheet-like remote mirror of the dataset."""

    @abstractmethod
    async def push_table(self, mirror_id: str, table_name: str,
                         rows: List[List[str]]) -> None:
        """Overwrite one table of the mirror; the first row holds the headers."""
        pass

    @abstractmethod
    async def read_table(self, mirror_id: str, table_name: str) -> List[List[str]]:
        """Read one table of the mirror, headers first; empty if the table is missing."""
        pass

    @abstractmethod
    async def create_mirror(self, title: str) -> str:
        """Create a new mirror and return its id."""
        pass

    @abstractmethod
    async def find_mirror_by_name(self, folder_id: Optional[str], name: str) -> Optional[str]:
        """Find an existing mirror by title, optionally inside a folder."""
        pass

    async def link_for(self, mirror_id: str) -> str:
        """Shareable link to a mirror, if the service has one."""
        return ""


class ArchiveAdapter(ABC):
    """Interface for the remote file storage holding archives."""

    @abstractmethod
    async def upload(self, name: str, data: bytes, mime_type: str,
                     folder_id: Optional[str]) -> RemoteFile:
        """Upload a file and return its remote description."""
        pass

    @abstractmethod
    async def list_folder(self, folder_id: str) -> List[RemoteFile]:
        """List a folder, most recently modified first."""
        pass

    @abstractmethod
    async def download(self, file_id: str) -> bytes:
        """Download the content of a file."""
        pass

    @abstractmethod
    async def delete(self, file_id: str) -> None:
        """Delete a file."""
        pass

    @abstractmethod
    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        """Create a folder and return its id."""
        pass

    @abstractmethod
    async def find_folder_by_name(self, name: str,
                                  parent_id: Optional[str] = None) -> Optional[str]:
        """Find a folder by name, optionally inside a parent folder."""
        pass


class RemoteAdapterFactory(ABC):
    """Builds remote adapters from a user's stored credentials."""

    @abstractmethod
    def mirror_for(self, user: UserAccount) -> MirrorAdapter:
        """Mirror adapter acting on behalf of a user."""
        pass

    @abstractmethod
    def archive_for(self, user: UserAccount) -> ArchiveAdapter:
        """Archive adapter acting on behalf of a user."""
        pass
