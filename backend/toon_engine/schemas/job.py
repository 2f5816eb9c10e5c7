from typing import List, Optional

from pydantic import BaseModel, Field

from toon_engine.models.conversion_job import JobKind, JobStatus


class ScenePerson(BaseModel):
    role: str = "main"
    description: str = ""
    position: str = ""


class SceneEnvironment(BaseModel):
    description: str = ""
    lighting: str = ""
    surfaces: List[str] = Field(default_factory=list)


class SceneAnalysis(BaseModel):
    """Pre-computed description of a photo that the prompt builder and the quality gate consume."""

    people: List[ScenePerson] = Field(default_factory=list)
    environment: SceneEnvironment = Field(default_factory=SceneEnvironment)
    color_palette: List[str] = Field(default_factory=list, alias="colorPalette")

    class Config:
        populate_by_name = True


class JobSubmission(BaseModel):
    owner_id: str
    style_id: str
    images: List[str]  # data:image/<type>;base64,<payload>
    is_authenticated: bool = False
    account_id: Optional[str] = None
    kind: str = JobKind.PHOTO.value
    scene_analysis: Optional[SceneAnalysis] = None


class JobAccepted(BaseModel):
    job_id: str
    total_images: int
    status: str = "accepted"


class JobStatusView(BaseModel):
    job_id: str
    status: JobStatus
    completed_images: int
    total_images: int
    result_ids: List[str]
    failed_indices: List[int]
    error_message: Optional[str] = None
