from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..orchestration.state import Library, Project


class ProjectModel(BaseModel):
    project_id: str
    name: str
    type: str
    status: str
    owner_id: str | None = None
    threads: list[str] = Field(default_factory=list)
    created_at: datetime
    last_activity: datetime

    @classmethod
    def from_domain(cls, project: Project) -> "ProjectModel":
        return cls(
            project_id=project.id,
            name=project.name,
            type=project.type.value,
            status=project.status.value,
            owner_id=project.owner_id,
            threads=list(project.threads),
            created_at=project.created_at,
            last_activity=project.last_activity,
        )


class LibraryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    folder_path: str = Field(..., min_length=1)
    description: str | None = None
    auto_scan: bool = True


class LibraryModel(BaseModel):
    library_id: str
    name: str
    folder_path: str
    description: str | None = None
    document_count: int = 0
    chunk_count: int = 0
    total_size_bytes: int = 0
    scan_status: str
    processed_count: int | None = None
    total_files: int | None = None
    auto_scan: bool = True
    last_scanned: datetime
    created_at: datetime

    @classmethod
    def from_domain(cls, library: Library) -> "LibraryModel":
        return cls(
            library_id=library.id,
            name=library.name,
            folder_path=library.folder_path,
            description=library.description,
            document_count=library.document_count,
            chunk_count=library.chunk_count,
            total_size_bytes=library.total_size_bytes,
            scan_status=library.scan_status.value,
            processed_count=library.processed_count,
            total_files=library.total_files,
            auto_scan=library.auto_scan,
            last_scanned=library.last_scanned,
            created_at=library.created_at,
        )


__all__ = ["LibraryCreateRequest", "LibraryModel", "ProjectModel"]
