from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Origin(str, Enum):
    starter_placeholder = "starter_placeholder"
    model_generated = "model_generated"
    human_authored = "human_authored"
    admin_placeholder = "admin_placeholder"


class Annotation(str, Enum):
    new = "new"  # no row with this key yet
    matching_existing = "matching-existing"  # a row exists with the same result
    conflicting = "conflicting"  # a row exists with a different result


class CombineRequestModel(BaseModel):
    a: str
    b: str


class CombineResponseModel(BaseModel):
    result_name: str
    result_glyph: str
    origin: Origin
    cached: bool = False
    first_discovery: bool = False


class PathStepModel(BaseModel):
    input_a: str = Field(alias="a")
    input_b: str = Field(alias="b")
    result_name: str
    result_glyph: str

    class Config:
        populate_by_name = True


class ConflictModel(BaseModel):
    existing_result: str
    existing_glyph: str
    generated_result: str
    generated_glyph: str


class EmojiMismatchModel(BaseModel):
    existing: str
    generated: str


class AnnotatedStepModel(PathStepModel):
    annotation: Annotation
    conflict: Optional[ConflictModel] = None
    emoji_mismatch: Optional[EmojiMismatchModel] = None


class PathSummaryModel(BaseModel):
    new: int = 0
    existing: int = 0
    conflicts: int = 0


class AnnotatedPathModel(BaseModel):
    steps: list[AnnotatedStepModel]
    summary: PathSummaryModel


class PathGenerateRequestModel(BaseModel):
    target: str
    count: int = Field(default=3, ge=1, le=5)


class PathGenerateResponseModel(BaseModel):
    target: str
    paths: list[AnnotatedPathModel]
    existing_combinations_used: int


class PathCommitRequestModel(BaseModel):
    path: list[PathStepModel]
    target_name: str
    target_glyph: str


class StepConflictModel(BaseModel):
    input_a: str = Field(alias="a")
    input_b: str = Field(alias="b")
    existing_result: str
    existing_glyph: str
    attempted_result: str

    class Config:
        populate_by_name = True


class CommitReportModel(BaseModel):
    created: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0
    conflict_details: list[StepConflictModel] = []
    error_details: list[str] = []
    target_placeholder_created: bool = False


class ManualStepModel(BaseModel):
    input_a: str = Field(alias="a")
    input_b: str = Field(alias="b")
    result_name: str
    glyph_a: Optional[str] = None
    glyph_b: Optional[str] = None
    result_glyph: Optional[str] = None

    class Config:
        populate_by_name = True


class ManualPathwayRequestModel(BaseModel):
    steps: list[ManualStepModel]
    final_element: str


class ManualPathwayResponseModel(CommitReportModel):
    steps: list[PathStepModel] = []
    final_element: str
    final_glyph: str


class ShortestPathResponseModel(BaseModel):
    target: str
    found: bool
    steps: list[PathStepModel] = []


class ElementUpdateModel(BaseModel):
    new_name: Optional[str] = None
    new_glyph: Optional[str] = None


class ElementChangeReportModel(BaseModel):
    name: str
    glyph: Optional[str] = None
    updated: int = 0
    merged: int = 0
    deleted: int = 0
    invalidated_keys: int = 0


class CombinationCreateModel(BaseModel):
    input_a: str = Field(alias="a")
    input_b: str = Field(alias="b")
    result_name: str
    result_glyph: str

    class Config:
        populate_by_name = True


class CombinationUpdateModel(BaseModel):
    """Identifies the pair by ``key`` or by both inputs."""

    key: Optional[str] = None
    input_a: Optional[str] = Field(default=None, alias="a")
    input_b: Optional[str] = Field(default=None, alias="b")
    result_name: Optional[str] = None
    result_glyph: Optional[str] = None

    class Config:
        populate_by_name = True
