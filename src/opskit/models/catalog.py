"""Catalog models: the remote manifest and the descriptors built from it."""

from datetime import UTC, datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ManifestRecord(BaseModel):
    """Base for records parsed from the camelCase manifest document."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ToolParameter(_ManifestRecord):
    """A parameter a tool accepts on its command line."""

    name: str
    type: str = "string"
    required: bool = False
    description: str = ""
    default: str | None = Field(
        default=None,
        validation_alias=AliasChoices("default", "defaultValue"),
    )


class CategoryRecord(_ManifestRecord):
    """A category as listed in the manifest."""

    id: str
    name: str
    description: str = ""


class ModuleRecord(_ManifestRecord):
    """A shared module as listed in the manifest."""

    id: str
    name: str = ""
    version: str = ""
    artifact_path: str = Field(validation_alias=AliasChoices("artifactPath", "file"))
    checksum: str | None = Field(
        default=None,
        validation_alias=AliasChoices("checksum", "sha256"),
    )


class ToolRecord(_ManifestRecord):
    """A tool as listed in the manifest (dependencies are module ids)."""

    id: str
    name: str
    category: str = ""
    description: str = ""
    version: str = "0.0.0"
    artifact_path: str = Field(validation_alias=AliasChoices("artifactPath", "file"))
    checksum: str | None = Field(
        default=None,
        validation_alias=AliasChoices("checksum", "sha256"),
    )
    dependencies: list[str] = Field(default_factory=list)
    requires_elevated_privilege: bool = Field(
        default=False,
        validation_alias=AliasChoices("requiresElevatedPrivilege", "requiresAdmin"),
    )
    requires_external_resource: bool = Field(
        default=False,
        validation_alias=AliasChoices("requiresExternalResource", "requiresDatabase"),
    )
    external_resource: str | None = None
    parameters: list[ToolParameter] = Field(default_factory=list)


class Manifest(_ManifestRecord):
    """The raw remote manifest document."""

    version: str = ""
    launcher_version: str | None = None
    categories: list[CategoryRecord] = Field(default_factory=list)
    tools: list[ToolRecord] = Field(default_factory=list)
    modules: list[ModuleRecord] = Field(default_factory=list)


class ModuleRef(BaseModel):
    """A dependency that must be cache-resolved before a tool can run."""

    model_config = ConfigDict(frozen=True)

    id: str
    artifact_path: str
    checksum: str | None = None


class Category(BaseModel):
    """A tool category."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""


class ToolDescriptor(BaseModel):
    """Immutable description of a runnable tool.

    Owned by the catalog resolver and replaced wholesale on refresh.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: str = ""
    description: str = ""
    version: str = "0.0.0"
    artifact_path: str
    checksum: str | None = None
    dependencies: tuple[ModuleRef, ...] = ()
    requires_elevated_privilege: bool = False
    requires_external_resource: bool = False
    external_resource: str | None = None
    parameters: tuple[ToolParameter, ...] = ()


class Catalog(BaseModel):
    """A resolved catalog of tools and modules."""

    model_config = ConfigDict(frozen=True)

    version: str = ""
    launcher_version: str | None = None
    categories: tuple[Category, ...] = ()
    tools: tuple[ToolDescriptor, ...] = ()
    modules: tuple[ModuleRef, ...] = ()
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    from_cache: bool = False
    offline: bool = False

    def get_tool(self, tool_id: str) -> ToolDescriptor | None:
        """Look up a tool by id."""
        for tool in self.tools:
            if tool.id == tool_id:
                return tool
        return None

    def tools_in_category(self, category_id: str) -> list[ToolDescriptor]:
        """List tools belonging to a category."""
        return [t for t in self.tools if t.category == category_id]


class LauncherUpdate(BaseModel):
    """Signals that the manifest advertises a newer launcher."""

    model_config = ConfigDict(frozen=True)

    current_version: str
    latest_version: str
