"""
可视化渲染与 Dashboard 组合的测试
"""
import pytest

from pulse.models.visualization import Visualization
from pulse.services.visualization_service import render_rows, resolve_mapping, validate_mapping
from pulse.core.errors import BadInput

ROWS = [
    {"category": "A", "amount": 10},
    {"category": "B", "amount": 7},
    {"category": "A", "amount": 5},
]

SCHEMA = {
    "category": {"name": "category", "type": "string", "nullable": False},
    "amount": {"name": "amount", "type": "number", "nullable": False},
}


def make_visualization(**kwargs):
    values = {
        "type": "bar",
        "renderer": "chartjs",
        "config": {},
        "data_mapping": {"x": "category", "y": "amount"},
        "filters": [],
        "aggregations": [],
    }
    values.update(kwargs)
    return Visualization(name="chart", dataset_id=1, **values)


@pytest.fixture
def dataset_id(client, sales_query):
    response = client.post("/api/datasets/", json={"queryId": sales_query.id, "isSnapshot": True})
    return response.json()["data"]["id"]


@pytest.fixture
def visualization_id(client, dataset_id):
    response = client.post(
        "/api/visualizations/",
        json={
            "name": "Sales by category",
            "datasetId": dataset_id,
            "type": "bar",
            "dataMapping": {"x": "category", "y": "amount"},
            "aggregations": [{"field": "amount", "function": "sum"}],
        },
    )
    assert response.status_code == 201
    return response.json()["data"]["id"]


@pytest.fixture
def dashboard_id(client):
    response = client.post("/api/dashboards/", json={"name": "Sales", "isRealtime": True})
    assert response.status_code == 201
    return response.json()["data"]["id"]


def add_item(client, dashboard_id, visualization_id, **extra):
    response = client.post(
        f"/api/dashboards/{dashboard_id}/items",
        json={"visualizationId": visualization_id, **extra},
    )
    assert response.status_code == 201
    return response.json()["data"]


class TestRenderRows:
    """测试渲染的纯函数部分"""

    def test_aggregated_bar_chart(self):
        viz = make_visualization(aggregations=[{"field": "amount", "function": "sum"}])
        rendered = render_rows(viz, ROWS)
        chart = rendered["data"]
        assert chart["type"] == "bar"
        assert chart["data"]["labels"] == ["A", "B"]
        assert chart["data"]["datasets"][0]["label"] == "amount_sum"
        assert chart["data"]["datasets"][0]["data"] == [15, 7]
        assert "scales" in chart["options"]

    def test_filters_before_aggregation(self):
        viz = make_visualization(
            filters=[{"field": "amount", "operator": "greater_than", "value": 6}],
            aggregations=[{"field": "amount", "function": "count"}],
        )
        chart = render_rows(viz, ROWS)["data"]
        assert chart["data"]["datasets"][0]["data"] == [1, 1]

    def test_pie_has_no_scales(self):
        chart = render_rows(make_visualization(type="pie"), ROWS)["data"]
        assert "scales" not in chart["options"]
        assert chart["data"]["labels"] == ["A", "B", "A"]

    def test_scatter_points(self):
        viz = make_visualization(type="scatter", data_mapping={"x": "amount", "y": "amount"})
        chart = render_rows(viz, ROWS)["data"]
        assert chart["data"]["datasets"][0]["data"][0] == {"x": 10, "y": 10}

    def test_custom_metric_and_table(self):
        metric = make_visualization(
            type="metric",
            renderer="custom",
            data_mapping={"value": "amount"},
            aggregations=[{"field": "amount", "function": "sum"}],
        )
        assert render_rows(metric, ROWS)["data"]["value"] == 22

        table = make_visualization(type="table", renderer="custom", data_mapping={})
        data = render_rows(table, ROWS)["data"]
        assert data["columns"] == ["category", "amount"]
        assert len(data["rows"]) == 3

    def test_d3_passes_rows(self):
        data = render_rows(make_visualization(renderer="d3"), ROWS)["data"]
        assert data["data"] == ROWS
        assert data["config"]["width"] == 800

    def test_resolve_mapping_uses_group_field(self):
        aggregated = [{"category": "A", "amount_sum": 15}]
        resolved = resolve_mapping({"y": "amount", "category": "category"}, [{"field": "amount"}], aggregated)
        assert resolved["y"] == "amount_sum"

    def test_validate_mapping(self):
        validate_mapping({"x": "category", "y": "amount_sum"}, SCHEMA, [{"field": "amount", "function": "sum"}])
        with pytest.raises(BadInput):
            validate_mapping({"x": "region"}, SCHEMA)
        with pytest.raises(BadInput):
            validate_mapping({}, SCHEMA, [{"field": "category", "function": "sum"}])


class TestVisualizationApi:
    """测试可视化接口"""

    def test_render(self, client, visualization_id, dataset_id):
        response = client.get(f"/api/visualizations/{visualization_id}/render")
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["visualization"]["renderer"] == "chartjs"
        assert body["data"]["data"]["labels"] == ["A", "B"]
        assert body["data"]["data"]["datasets"][0]["data"] == [15, 7]
        assert body["metadata"]["rowCount"] == 2
        assert body["metadata"]["datasetId"] == dataset_id

    def test_create_rejects_unknown_field(self, client, dataset_id):
        response = client.post(
            "/api/visualizations/",
            json={
                "name": "bad",
                "datasetId": dataset_id,
                "type": "bar",
                "dataMapping": {"x": "region", "y": "amount"},
            },
        )
        assert response.status_code == 400
        assert response.json()["error"] == "BadInput"

    def test_render_missing_dataset(self, client, visualization_id, dataset_id):
        client.delete(f"/api/datasets/{dataset_id}")
        response = client.get(f"/api/visualizations/{visualization_id}/render")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_clone(self, client, visualization_id):
        response = client.post(f"/api/visualizations/{visualization_id}/clone", json={})
        assert response.status_code == 201
        cloned = response.json()["data"]
        assert cloned["id"] != visualization_id
        assert cloned["name"] == "Sales by category (Copy)"
        assert cloned["aggregations"] == [{"field": "amount", "function": "sum"}]

    def test_delete_removes_dashboard_items(self, client, visualization_id, dashboard_id):
        add_item(client, dashboard_id, visualization_id)
        client.delete(f"/api/visualizations/{visualization_id}")
        dashboard = client.get(f"/api/dashboards/{dashboard_id}").json()["data"]
        assert dashboard["items"] == []


class TestDashboardCompose:
    """测试 Dashboard 组合渲染"""

    def test_render_items_in_order(self, client, visualization_id, dashboard_id):
        first = add_item(client, dashboard_id, visualization_id, title="Totals")
        second = add_item(client, dashboard_id, visualization_id)
        assert (first["order"], second["order"]) == (0, 1)

        body = client.get(f"/api/dashboards/{dashboard_id}/render").json()["data"]
        assert body["dashboard"]["isRealtime"] is True
        assert body["metadata"]["itemCount"] == 2
        assert [item["id"] for item in body["items"]] == [first["id"], second["id"]]
        assert body["items"][0]["title"] == "Totals"
        assert body["items"][1]["title"] == "Sales by category"
        assert body["items"][0]["visualization"]["data"]["data"]["datasets"][0]["data"] == [15, 7]

    def test_failed_item_is_isolated(self, client, sales_query, visualization_id, dashboard_id):
        """数据集被删除的组件返回错误，其它组件正常渲染"""
        healthy_dataset = client.post(
            "/api/datasets/", json={"queryId": sales_query.id, "isSnapshot": True}
        ).json()["data"]["id"]
        healthy = client.post(
            "/api/visualizations/",
            json={
                "name": "Raw",
                "datasetId": healthy_dataset,
                "type": "table",
                "renderer": "custom",
            },
        ).json()["data"]["id"]
        broken_item = add_item(client, dashboard_id, visualization_id)
        healthy_item = add_item(client, dashboard_id, healthy)

        broken_dataset = client.get(f"/api/visualizations/{visualization_id}").json()["data"]["datasetId"]
        client.delete(f"/api/datasets/{broken_dataset}")

        response = client.get(f"/api/dashboards/{dashboard_id}/render")
        assert response.status_code == 200
        items = {item["id"]: item for item in response.json()["data"]["items"]}
        assert items[broken_item["id"]]["error"]["kind"] == "NotFound"
        assert "visualization" not in items[broken_item["id"]]
        assert "error" not in items[healthy_item["id"]]
        assert items[healthy_item["id"]]["visualization"]["data"]["type"] == "table"

    def test_view_tracking(self, client, dashboard_id):
        client.get(f"/api/dashboards/{dashboard_id}/render")
        client.get(f"/api/dashboards/{dashboard_id}/render", params={"skip_view_tracking": True})
        client.get(f"/api/dashboards/{dashboard_id}/render")
        dashboard = client.get(f"/api/dashboards/{dashboard_id}").json()["data"]
        assert dashboard["viewCount"] == 2
        assert dashboard["lastViewedAt"] is not None

    def test_unknown_dashboard(self, client):
        response = client.get("/api/dashboards/12345/render")
        assert response.status_code == 404


class TestDashboardLayout:
    """测试组件布局、锁定与排序"""

    def test_locked_item_rejects_move(self, client, visualization_id, dashboard_id):
        item = add_item(client, dashboard_id, visualization_id, isLocked=True)
        response = client.put(
            f"/api/dashboards/{dashboard_id}/items/{item['id']}",
            json={"position": {"x": 4, "y": 0, "w": 4, "h": 4}},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "Conflict"

        renamed = client.put(f"/api/dashboards/{dashboard_id}/items/{item['id']}", json={"title": "New"})
        assert renamed.status_code == 200
        assert renamed.json()["data"]["title"] == "New"

    def test_layout_update_is_all_or_nothing(self, client, visualization_id, dashboard_id):
        free = add_item(client, dashboard_id, visualization_id)
        locked = add_item(client, dashboard_id, visualization_id, isLocked=True)
        response = client.put(
            f"/api/dashboards/{dashboard_id}/layout",
            json={
                "items": [
                    {"id": free["id"], "position": {"x": 8, "y": 2, "w": 4, "h": 4}},
                    {"id": locked["id"], "position": {"x": 0, "y": 8, "w": 4, "h": 4}},
                ]
            },
        )
        assert response.status_code == 409
        dashboard = client.get(f"/api/dashboards/{dashboard_id}").json()["data"]
        positions = {item["id"]: item["position"] for item in dashboard["items"]}
        assert positions[free["id"]] == {"x": 0, "y": 0, "w": 4, "h": 4}

        ok_response = client.put(
            f"/api/dashboards/{dashboard_id}/layout",
            json={"items": [{"id": free["id"], "position": {"x": 8, "y": 2, "w": 4, "h": 4}}]},
        )
        assert ok_response.status_code == 200

    def test_layout_rejects_foreign_and_negative(self, client, visualization_id, dashboard_id):
        add_item(client, dashboard_id, visualization_id)
        foreign = client.put(
            f"/api/dashboards/{dashboard_id}/layout",
            json={"items": [{"id": 9999, "position": {"x": 0, "y": 0, "w": 1, "h": 1}}]},
        )
        assert foreign.status_code == 400

        negative = client.post(
            f"/api/dashboards/{dashboard_id}/items",
            json={"visualizationId": visualization_id, "position": {"x": -1, "y": 0, "w": 1, "h": 1}},
        )
        assert negative.status_code == 400

    def test_reorder(self, client, visualization_id, dashboard_id):
        a = add_item(client, dashboard_id, visualization_id)
        b = add_item(client, dashboard_id, visualization_id)
        c = add_item(client, dashboard_id, visualization_id)

        response = client.put(
            f"/api/dashboards/{dashboard_id}/reorder",
            json={"itemIds": [c["id"], a["id"], b["id"]]},
        )
        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert [i["id"] for i in items] == [c["id"], a["id"], b["id"]]
        assert [i["order"] for i in items] == [0, 1, 2]

        partial = client.put(f"/api/dashboards/{dashboard_id}/reorder", json={"itemIds": [a["id"]]})
        assert partial.status_code == 400

    def test_remove_item_renumbers(self, client, visualization_id, dashboard_id):
        a = add_item(client, dashboard_id, visualization_id)
        b = add_item(client, dashboard_id, visualization_id)
        c = add_item(client, dashboard_id, visualization_id)

        response = client.delete(f"/api/dashboards/{dashboard_id}/items/{b['id']}")
        assert response.status_code == 200
        items = client.get(f"/api/dashboards/{dashboard_id}").json()["data"]["items"]
        assert [(i["id"], i["order"]) for i in items] == [(a["id"], 0), (c["id"], 1)]


class TestDashboardCopies:
    """测试复制与模板"""

    def test_clone_copies_items(self, client, visualization_id, dashboard_id):
        add_item(client, dashboard_id, visualization_id, title="One")
        response = client.post(f"/api/dashboards/{dashboard_id}/clone", json={"name": "Copy"})
        assert response.status_code == 201
        cloned = response.json()["data"]
        assert cloned["name"] == "Copy"
        assert cloned["isPublic"] is False
        assert [i["title"] for i in cloned["items"]] == ["One"]

    def test_instantiate_template(self, client, visualization_id):
        template = client.post("/api/dashboards/", json={"name": "Tpl", "isTemplate": True}).json()["data"]
        add_item(client, template["id"], visualization_id)

        response = client.post(
            f"/api/dashboards/templates/{template['id']}/instantiate", json={"name": "From template"}
        )
        assert response.status_code == 201
        created = response.json()["data"]
        assert created["isTemplate"] is False
        assert created["layout"]["templateId"] == template["id"]
        assert len(created["items"]) == 1

    def test_instantiate_requires_template(self, client, dashboard_id):
        response = client.post(
            f"/api/dashboards/templates/{dashboard_id}/instantiate", json={"name": "x"}
        )
        assert response.status_code == 400
