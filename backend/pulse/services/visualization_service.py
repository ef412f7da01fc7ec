"""
可视化渲染服务

渲染流水线：
1. 获取数据集 (可选过期自动刷新)
2. 过滤 (filters，AND 组合)
3. 分组聚合 (aggregations)
4. 按渲染器映射为图表数据 (chartjs / d3 / custom)
5. 打包 {visualization, data, metadata}

渲染结果缓存在 pulse:visualization:{id}。
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from pulse import crud
from pulse.core.errors import BadInput, NotFound
from pulse.core.timeutil import isoformat, utcnow
from pulse.models.visualization import Visualization
from pulse.schemas.visualization import VisualizationCreate, VisualizationUpdate
from pulse.services.cache_service import cache_key, result_cache, ttl_for
from pulse.services.dataset_service import DatasetService, dataset_service
from pulse.services.invalidation import invalidate_dashboards, invalidate_visualization, notify_dashboards
from pulse.services.transforms import AGGREGATE_FUNCTIONS, aggregate, apply_filters, group_field

logger = logging.getLogger(__name__)

SERIES_TYPES = ("bar", "line", "pie", "doughnut", "polarArea", "radar")
POINT_TYPES = ("scatter", "bubble")
RADIAL_TYPES = ("pie", "doughnut", "polarArea")

# 默认调色板 (10 色循环)
PALETTE = (
    (54, 162, 235),   # Blue
    (255, 99, 132),   # Red
    (75, 192, 192),   # Green
    (255, 206, 86),   # Yellow
    (153, 102, 255),  # Purple
    (255, 159, 64),   # Orange
    (199, 199, 199),  # Gray
    (83, 102, 255),   # Indigo
    (255, 99, 255),   # Pink
    (99, 255, 132),   # Lime
)

D3_DEFAULTS = {
    "width": 800,
    "height": 600,
    "margin": {"top": 20, "right": 20, "bottom": 30, "left": 40},
}

NUMERIC_AGGREGATES = ("sum", "avg", "min", "max")


def palette_color(index: int, alpha: float = 1) -> str:
    r, g, b = PALETTE[index % len(PALETTE)]
    return f"rgba({r}, {g}, {b}, {alpha})"


def _pick(values: Any, index: int) -> Any:
    if isinstance(values, list):
        return values[index] if index < len(values) else None
    return None


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _aggregation_group(mapping: Dict[str, Any], aggregations: List[Dict[str, Any]]) -> Optional[str]:
    explicit = mapping.get("groupBy")
    if not explicit:
        for spec in aggregations:
            if spec.get("groupBy"):
                explicit = spec["groupBy"]
                break
    return group_field(mapping, explicit)


def resolve_mapping(
    mapping: Dict[str, Any],
    aggregations: List[Dict[str, Any]],
    rows: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    聚合后的字段映射

    y / value 指向原始字段时解析为该字段的第一个聚合列 (amt → amt_sum)；
    未指定 x 时使用分组字段。
    """
    if not aggregations:
        return dict(mapping)
    resolved = dict(mapping)
    columns = list(rows[0].keys()) if rows else []

    def resolve(field: Any) -> Any:
        if not isinstance(field, str) or field in columns:
            return field
        for column in columns:
            if column.startswith(f"{field}_") and column[len(field) + 1:] in AGGREGATE_FUNCTIONS:
                return column
        return field

    for key in ("y", "value", "r"):
        if key in resolved:
            value = resolved[key]
            resolved[key] = [resolve(v) for v in value] if isinstance(value, list) else resolve(value)
    group = _aggregation_group(mapping, aggregations)
    if group and not any(resolved.get(k) for k in ("x", "category", "dimension")):
        resolved["x"] = group
    return resolved


# ---- 渲染器 ----

def _chart_scales(config: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "x": {
            "display": config.get("showXAxis") is not False,
            "title": {"display": bool(config.get("xAxisLabel")), "text": config.get("xAxisLabel") or ""},
            "grid": {"display": config.get("showGrid") is not False},
        },
        "y": {
            "display": config.get("showYAxis") is not False,
            "title": {"display": bool(config.get("yAxisLabel")), "text": config.get("yAxisLabel") or ""},
            "grid": {"display": config.get("showGrid") is not False},
            "beginAtZero": config.get("beginAtZero") is not False,
        },
    }


def render_chartjs(chart_type: str, mapping: Dict[str, Any], config: Dict[str, Any], rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    x_field = mapping.get("x") or mapping.get("category") or mapping.get("dimension")
    label_field = mapping.get("labels")
    labels = [
        row.get(x_field) if row.get(x_field) is not None else row.get(label_field)
        for row in rows
    ]
    datasets: List[Dict[str, Any]] = []

    if chart_type in POINT_TYPES:
        points = []
        for row in rows:
            point = {"x": row.get(mapping.get("x")), "y": row.get(_as_list(mapping.get("y"))[0] if mapping.get("y") else None)}
            if chart_type == "bubble" and mapping.get("r"):
                point["r"] = row.get(mapping["r"])
            points.append(point)
        datasets.append({
            "label": config.get("label") or "Dataset",
            "data": points,
            "backgroundColor": config.get("backgroundColor") or palette_color(0, 0.5),
            "borderColor": config.get("borderColor") or palette_color(0, 1),
        })
    else:
        for index, y_field in enumerate(_as_list(mapping.get("y"))):
            datasets.append({
                "label": _pick(config.get("labels"), index) or y_field,
                "data": [row.get(y_field) for row in rows],
                "backgroundColor": _pick(config.get("backgroundColor"), index) or palette_color(index, 0.7),
                "borderColor": _pick(config.get("borderColor"), index) or palette_color(index, 1),
                "borderWidth": config.get("borderWidth") or 1,
                **(config.get("datasetOptions") or {}),
            })

    options: Dict[str, Any] = {
        "responsive": True,
        "maintainAspectRatio": config.get("maintainAspectRatio") is not False,
        "plugins": {
            "legend": {
                "display": config.get("showLegend") is not False,
                "position": config.get("legendPosition") or "top",
            },
            "title": {"display": bool(config.get("title")), "text": config.get("title") or ""},
            "tooltip": {"enabled": config.get("showTooltips") is not False},
        },
    }
    if chart_type not in RADIAL_TYPES:
        options["scales"] = _chart_scales(config)
    options.update(config.get("customOptions") or {})

    return {"type": chart_type, "data": {"labels": labels, "datasets": datasets}, "options": options}


def render_d3(chart_type: str, mapping: Dict[str, Any], config: Dict[str, Any], rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": chart_type,
        "data": rows,
        "mapping": mapping,
        "config": {**D3_DEFAULTS, **config},
    }


def render_custom(chart_type: str, mapping: Dict[str, Any], config: Dict[str, Any], rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    if chart_type == "table":
        return {
            "type": "table",
            "columns": config.get("columns") or list(rows[0].keys() if rows else []),
            "rows": rows,
            "sort": {
                "enabled": config.get("sortable") is not False,
                "field": config.get("sortField"),
                "direction": config.get("sortDirection") or "asc",
            },
            "filter": {"enabled": config.get("filterable") is not False},
            "page": config.get("pagination") or {"enabled": True, "pageSize": 50},
        }

    value_field = mapping.get("value")
    value = rows[0].get(value_field) if rows and value_field else 0
    if chart_type == "metric":
        return {
            "type": "metric",
            "value": value,
            "label": config.get("label") or value_field,
            "format": config.get("format") or "number",
            "comparison": config.get("comparison"),
            "icon": config.get("icon"),
            "color": config.get("color"),
        }
    if chart_type == "gauge":
        return {
            "type": "gauge",
            "value": value,
            "min": config.get("min", 0),
            "max": config.get("max", 100),
            "thresholds": config.get("thresholds") or [],
            "label": config.get("label") or value_field,
        }
    return {"type": chart_type, "data": rows, "config": config}


RENDERERS = {
    "chartjs": render_chartjs,
    "d3": render_d3,
    "custom": render_custom,
}


def render_rows(visualization: Visualization, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """纯函数部分：过滤 → 聚合 → 映射"""
    mapping = visualization.data_mapping or {}
    config = visualization.config or {}
    aggregations = visualization.aggregations or []

    rows = apply_filters(rows, visualization.filters or [])
    if aggregations:
        rows = aggregate(rows, _aggregation_group(mapping, aggregations), aggregations)
    mapping = resolve_mapping(mapping, aggregations, rows)

    renderer = RENDERERS.get(visualization.renderer)
    if renderer is None:
        raise BadInput(f"Unknown renderer: {visualization.renderer}")
    return {"rows": rows, "data": renderer(visualization.type, mapping, config, rows)}


def _mapped_fields(mapping: Dict[str, Any]) -> List[str]:
    fields = []
    for value in mapping.values():
        if isinstance(value, str):
            fields.append(value)
        elif isinstance(value, list):
            fields.extend(v for v in value if isinstance(v, str))
    return fields


def validate_mapping(
    mapping: Optional[Dict[str, Any]],
    schema: Optional[Dict[str, Any]],
    aggregations: Optional[List[Dict[str, Any]]] = None,
) -> None:
    """
    校验字段映射与数据集 schema

    Raises:
        BadInput: 映射字段不存在，或数值聚合作用于非数值字段
    """
    schema = schema or {}
    if not schema:
        return
    aggregations = aggregations or []
    available = set(schema.keys())
    for spec in aggregations:
        field = spec.get("field") or spec.get("on")
        function = spec.get("function") or spec.get("agg") or "sum"
        if field not in schema:
            raise BadInput(f"Aggregated field '{field}' does not exist in dataset schema")
        field_type = (schema[field] or {}).get("type")
        if function in NUMERIC_AGGREGATES and field_type not in ("number", "unknown"):
            raise BadInput(f"Aggregation '{function}' requires a numeric field, '{field}' is {field_type}")
        available.add(f"{field}_{function}")
    for field in _mapped_fields(mapping or {}):
        if field not in available:
            raise BadInput(f"Mapped field '{field}' does not exist in dataset schema")


class VisualizationService:
    """可视化服务"""

    def __init__(self, datasets: Optional[DatasetService] = None):
        self._datasets = datasets

    @property
    def datasets(self) -> DatasetService:
        return self._datasets or dataset_service

    def get(self, db: Session, visualization_id: int) -> Visualization:
        visualization = crud.visualization.get(db, visualization_id)
        if not visualization:
            raise NotFound("Visualization", visualization_id)
        return visualization

    def _dataset_schema(self, db: Session, dataset_id: int) -> Dict[str, Any]:
        dataset = crud.dataset.get(db, dataset_id)
        if not dataset:
            raise NotFound("Dataset", dataset_id)
        return dataset.result_schema or {}

    def create(self, db: Session, *, obj_in: VisualizationCreate, user: Optional[str] = None) -> Visualization:
        schema = self._dataset_schema(db, obj_in.dataset_id)
        validate_mapping(obj_in.data_mapping, schema, obj_in.aggregations)
        visualization = crud.visualization.create(db, obj_in=obj_in, created_by=user)
        logger.info(
            f"创建可视化: id={visualization.id}, type={visualization.type}, "
            f"renderer={visualization.renderer}"
        )
        return visualization

    async def update(self, db: Session, *, visualization_id: int, obj_in: VisualizationUpdate) -> Visualization:
        visualization = self.get(db, visualization_id)
        update_data = obj_in.model_dump(exclude_unset=True)
        if {"dataset_id", "data_mapping", "aggregations"} & set(update_data):
            schema = self._dataset_schema(db, update_data.get("dataset_id") or visualization.dataset_id)
            validate_mapping(
                update_data.get("data_mapping", visualization.data_mapping),
                schema,
                update_data.get("aggregations", visualization.aggregations),
            )
        visualization = crud.visualization.update(db, db_obj=visualization, obj_in=update_data)
        await invalidate_visualization(db, visualization_id)
        return visualization

    async def delete(self, db: Session, *, visualization_id: int) -> Visualization:
        self.get(db, visualization_id)
        dashboard_ids = crud.dashboard_item.get_dashboard_ids_for_visualization(
            db, visualization_id=visualization_id
        )
        crud.dashboard_item.delete_by_visualization(db, visualization_id=visualization_id)
        removed = crud.visualization.remove(db, id=visualization_id)
        await result_cache.invalidate_entity("visualization", visualization_id)
        await invalidate_dashboards(dashboard_ids)
        if dashboard_ids:
            await notify_dashboards(dashboard_ids, reason="visualization")
        logger.info(f"删除可视化: id={visualization_id}, 影响 Dashboard: {dashboard_ids}")
        return removed

    def clone(self, db: Session, *, visualization_id: int, name: Optional[str] = None, user: Optional[str] = None) -> Visualization:
        original = self.get(db, visualization_id)
        cloned = crud.visualization.create(
            db,
            obj_in={
                "name": name or f"{original.name} (Copy)",
                "description": original.description,
                "dataset_id": original.dataset_id,
                "type": original.type,
                "renderer": original.renderer,
                "config": dict(original.config or {}),
                "data_mapping": dict(original.data_mapping or {}),
                "filters": list(original.filters or []),
                "aggregations": list(original.aggregations or []),
                "created_by": user,
            },
        )
        logger.info(f"复制可视化: {visualization_id} -> {cloned.id}")
        return cloned

    async def render(
        self,
        db: Session,
        visualization_id: int,
        auto_refresh: bool = False,
        skip_cache: bool = False,
    ) -> Dict[str, Any]:
        """
        渲染可视化

        Args:
            visualization_id: 可视化ID
            auto_refresh: 数据集过期时先刷新
            skip_cache: 跳过渲染缓存

        Returns:
            {visualization, data, metadata}

        Raises:
            NotFound: 可视化或其数据集不存在
        """
        visualization = self.get(db, visualization_id)
        dataset = await self.datasets.get(db, visualization.dataset_id, auto_refresh=auto_refresh)

        key = cache_key("visualization", visualization.id)
        if not skip_cache:
            cached = await result_cache.get(key)
            if cached is not None:
                return cached

        rendered = render_rows(visualization, list(dataset.rows or []))
        payload = {
            "visualization": {
                "id": visualization.id,
                "name": visualization.name,
                "type": visualization.type,
                "renderer": visualization.renderer,
                "config": visualization.config or {},
            },
            "data": rendered["data"],
            "metadata": {
                "rowCount": len(rendered["rows"]),
                "generatedAt": isoformat(utcnow()),
                "datasetId": dataset.id,
            },
        }
        await result_cache.set_ex(key, payload, ttl_for("visualization"))
        return payload


# 全局实例
visualization_service = VisualizationService()
