from pydantic import BaseModel, Field


class IdeaPayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: str = Field(default="", max_length=20000)


class ConstraintsPayload(BaseModel):
    budget: str = ""
    duration: str = ""
    partners: str = ""


class GenerateProposalRequest(BaseModel):
    idea: IdeaPayload
    constraints: ConstraintsPayload = Field(default_factory=ConstraintsPayload)
    partner_ids: list[str] = Field(default_factory=list)
    template_id: str | None = None
    user_prompt: str | None = Field(default=None, max_length=20000)


class AiEditRequest(BaseModel):
    instruction: str = Field(..., min_length=1, max_length=8000)
    section_key: str | None = Field(default=None, max_length=120)


class GenerateSectionRequest(BaseModel):
    section_key: str = Field(..., min_length=1, max_length=120)
    label: str | None = Field(default=None, max_length=300)


class RankPartnersRequest(BaseModel):
    context: str = ""
    limit: int | None = Field(default=None, ge=1, le=100)


class TemplateCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    sections: list[dict[str, object]] = Field(default_factory=list)


class KnowledgeCreateRequest(BaseModel):
    source_name: str = Field(default="Guideline", min_length=1, max_length=300)
    chunks: list[dict[str, object]] = Field(..., min_length=1)
