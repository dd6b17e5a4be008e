"""Request/response models and shared enums."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ServerName(str, Enum):
    P21 = "P21"
    POR = "POR"


class ErrorType(str, Enum):
    CONNECTION = "connection"
    EXECUTION = "execution"
    SYNTAX = "syntax"
    UNKNOWN = "unknown"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    # Stop requested; the in-flight row is still finishing.
    STOPPED = "stopped"


class ChartRow(BaseModel):
    """One dashboard data point as the admin spreadsheet sends it."""

    model_config = ConfigDict(
        populate_by_name=True, use_enum_values=True, coerce_numbers_to_str=True
    )

    id: str = Field(..., min_length=1)
    chart_group: str = Field("", alias="chartGroup")
    chart_name: str = Field("", alias="chartName")
    variable_name: str = Field("", alias="variableName")
    server_name: ServerName = Field(..., alias="serverName")
    table_name: str | None = Field(None, alias="tableName")
    sql_expression: str = Field("", alias="sqlExpression")
    value: str | None = None
    last_updated: str | None = Field(None, alias="lastUpdated")
    error: str | None = None
    error_type: ErrorType | None = Field(None, alias="errorType")

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class BulkRowsPayload(BaseModel):
    data: list[ChartRow]


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # None means "run every row in the store".
    rows: list[ChartRow] | None = None
    is_production: bool = Field(True, alias="isProduction")


class QueryRequest(BaseModel):
    server: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)


class ConnectionTestRequest(BaseModel):
    server: str = Field(..., min_length=1)
