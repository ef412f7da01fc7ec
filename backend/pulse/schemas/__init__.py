# Import and re-export schema classes
from pulse.schemas.common import ApiResponse, PulseModel, ok, fail, dump
from pulse.schemas.data_source import (
    DataSourceCreate,
    DataSourceUpdate,
    DataSourceResponse,
    ProbeResult,
)
from pulse.schemas.query import (
    ParameterDef,
    ParameterValidation,
    QueryCreate,
    QueryUpdate,
    QueryResponse,
    QueryExecuteRequest,
    QueryTestRequest,
)
from pulse.schemas.dataset import (
    DatasetCreate,
    DatasetResponse,
    DatasetDetail,
    TransformOp,
    DatasetTransformRequest,
)
from pulse.schemas.visualization import (
    VisualizationCreate,
    VisualizationUpdate,
    VisualizationResponse,
    RenderRequest,
    CloneRequest,
)
from pulse.schemas.dashboard import (
    Position,
    DashboardCreate,
    DashboardUpdate,
    DashboardResponse,
    DashboardItemCreate,
    DashboardItemUpdate,
    DashboardItemResponse,
    LayoutItem,
    LayoutUpdateRequest,
    ReorderRequest,
    InstantiateRequest,
)
from pulse.schemas.report import (
    ReportCreate,
    ReportUpdate,
    ReportResponse,
    ReportExecuteRequest,
)
from pulse.schemas.schedule import (
    DeliveryChannel,
    ScheduleCreate,
    ScheduleUpdate,
    ScheduleResponse,
    ScheduleExecutionResponse,
    ToggleRequest,
)
