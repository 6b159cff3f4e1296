from pydantic import BaseModel, Field


class PublisherSpec(BaseModel):
    unique_name: str
    friendly_name: str
    prefix: str
    description: str | None = None


class AttributeDescriptor(BaseModel):
    name: str
    type: str = "string"
    is_primary_key: bool = False
    is_foreign_key: bool = False
    required: bool = False
    display_name: str | None = None
    description: str | None = None


class EntityDescriptor(BaseModel):
    name: str
    display_name: str | None = None
    primary_column_name: str = "name"
    description: str | None = None
    attributes: list[AttributeDescriptor] = Field(default_factory=list)


class RelationshipDescriptor(BaseModel):
    from_entity: str
    to_entity: str


class GlobalChoiceOption(BaseModel):
    label: str
    value: int | None = None
    description: str | None = None


class GlobalChoiceSpec(BaseModel):
    name: str
    display_name: str | None = None
    description: str | None = None
    options: list[GlobalChoiceOption]


class DeployRequest(BaseModel):
    solution_name: str
    solution_display_name: str | None = None
    solution_description: str | None = None
    publisher: PublisherSpec
    entities: list[EntityDescriptor] = Field(default_factory=list)
    relationships: list[RelationshipDescriptor] = Field(default_factory=list)
    global_choices: list[GlobalChoiceSpec] = Field(default_factory=list)
    selected_choices: list[str] = Field(default_factory=list)
    cdm_entity_map: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


class DeployResponse(BaseModel):
    success: bool
    deployment_id: str
    timestamp: str
    summary: str
    entities_created: int
    attributes_created: int
    relationships_created: int
    relationships_failed: int
    cdm_entities_integrated: list[str]
    global_choices_created: int
    global_choices_reused: int
    global_choices_added: int
    errors: list[dict]
    warnings: list[str]
    solution_info: dict
    rollback_data: dict
    error: str | None = None
    progress: list[dict] = Field(default_factory=list)


class DeploymentLookupRequest(BaseModel):
    deployment_id: str


class DeployStatusResponse(BaseModel):
    deployment_id: str
    status: str
    timestamp: str | None
    solution_info: dict
    summary: dict
    rollback_data: dict
    rollback_info: dict
    last_rollback: dict | None
    warnings: list[str]
    error: str | None


class DeployHistoryRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class DeployHistoryItem(BaseModel):
    deployment_id: str
    status: str
    timestamp: str | None
    solution_name: str | None
    summary: str | None
    rollback_count: int


class DeployHistoryResponse(BaseModel):
    data: list[DeployHistoryItem]


class RollbackOptions(BaseModel):
    relationships: bool = False
    custom_entities: bool = False
    cdm_entities: bool = False
    custom_global_choices: bool = False
    solution: bool = False
    publisher: bool = False


class RollbackRequest(BaseModel):
    deployment_id: str
    options: RollbackOptions | None = None


class RollbackResponse(BaseModel):
    status: str
    rollback_id: str
    deployment_id: str
    deployment_status: str
    results: dict
    summary: str
    warnings: list[str]
    errors: list[dict]
    progress: list[dict] = Field(default_factory=list)


class CanRollbackResponse(BaseModel):
    can_rollback: bool
    reason: str | None
    available_components: list[str]


class ActiveRollbackItem(BaseModel):
    rollback_id: str
    deployment_id: str
    status: str
    start_time: str


class ActiveRollbacksResponse(BaseModel):
    data: list[ActiveRollbackItem]
