"""Planning and generation schemas."""

from pydantic import BaseModel, Field, field_validator
from typing import List, Literal, Optional

from ..services.records import SourceFile


class SourceFileIn(BaseModel):
    """One repository file supplied by the caller."""
    path: str = Field(..., min_length=1)
    content: str

    @field_validator('path')
    @classmethod
    def normalize_path(cls, v: str) -> str:
        v = v.strip().replace('\\', '/')
        while v.startswith('./'):
            v = v[2:]
        if not v:
            raise ValueError("File path cannot be empty")
        return v


class FileSetRequest(BaseModel):
    repo_url: str = Field(..., min_length=1)
    files: List[SourceFileIn] = Field(..., min_length=1)
    force_full: bool = False
    documentation_mode: Literal["tutorial", "architecture"] = "tutorial"
    language: str = "english"

    def source_files(self) -> List[SourceFile]:
        return [SourceFile(path=f.path, content=f.content) for f in self.files]


class PlanRequest(FileSetRequest):
    """Files to compare against the cached snapshot."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "repo_url": "https://github.com/org/repo",
                    "files": [{"path": "src/app.py", "content": "print('hi')\n"}],
                    "force_full": False,
                }
            ]
        }
    }


class GenerateRequest(FileSetRequest):
    """Files to document; progress is streamed back as server-sent events."""
    project_name: Optional[str] = None
    use_cache: bool = True


class ChangeAnalysisResponse(BaseModel):
    added: List[str]
    removed: List[str]
    modified: List[str]
    unchanged: List[str]
    change_percentage: float


class RegenerationPlanResponse(BaseModel):
    mode: str
    units_to_regenerate: List[str]
    reidentify_top_level: bool
    reason: str


class PlanResponse(BaseModel):
    repo_id: str
    analysis: ChangeAnalysisResponse
    plan: RegenerationPlanResponse
