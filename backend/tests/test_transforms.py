"""
行数据变换的单元测试
测试过滤组合、分组聚合、投影和派生列
"""
import itertools

import pytest

from pulse.core.errors import BadInput
from pulse.services.transforms import (
    aggregate,
    apply_filters,
    apply_operations,
    group_field,
    match_filter,
    project,
)

SALES = [
    {"category": "A", "amount": 10, "region": "North"},
    {"category": "B", "amount": 7, "region": "south"},
    {"category": "A", "amount": 5, "region": None},
]


class TestFilters:
    """测试过滤条件"""

    def test_filters_are_and_combined(self):
        """多个条件按 AND 组合，等价于依次过滤"""
        f1 = {"field": "category", "operator": "equals", "value": "A"}
        f2 = {"field": "amount", "operator": "greater_than", "value": 6}
        combined = apply_filters(SALES, [f1, f2])
        sequential = apply_filters(apply_filters(SALES, [f1]), [f2])
        assert combined == sequential == [SALES[0]]

    def test_filter_order_does_not_matter(self):
        filters = [
            {"field": "amount", "operator": "greater_than_or_equal", "value": 5},
            {"field": "region", "operator": "is_not_null"},
            {"field": "category", "operator": "in", "value": ["a", "b"]},
        ]
        results = [apply_filters(SALES, list(order)) for order in itertools.permutations(filters)]
        assert len(results) == 6
        assert all(result == results[0] for result in results)
        assert results[0] == [SALES[0], SALES[1]]

    def test_empty_filters_return_copy(self):
        result = apply_filters(SALES, [])
        assert result == SALES
        assert result is not SALES

    def test_case_insensitive_by_default(self):
        spec = {"field": "region", "operator": "equals", "value": "SOUTH"}
        assert match_filter(SALES[1], spec)
        assert not match_filter(SALES[1], {**spec, "caseSensitive": True})

    def test_contains_and_in(self):
        assert match_filter(SALES[0], {"field": "region", "operator": "contains", "value": "nor"})
        assert match_filter(SALES[1], {"field": "category", "operator": "in", "value": ["B", "C"]})
        assert match_filter(SALES[0], {"field": "category", "operator": "not_in", "value": ["B"]})

    def test_between(self):
        spec = {"field": "amount", "operator": "between", "value": {"start": 5, "end": 7}}
        assert [r["amount"] for r in apply_filters(SALES, [spec])] == [7, 5]
        with pytest.raises(BadInput):
            match_filter(SALES[0], {"field": "amount", "operator": "between", "value": 3})

    def test_null_checks(self):
        assert apply_filters(SALES, [{"field": "region", "operator": "is_null"}]) == [SALES[2]]
        assert len(apply_filters(SALES, [{"field": "region", "operator": "is_not_null"}])) == 2

    def test_numeric_strings_compare_as_numbers(self):
        assert match_filter({"v": "10"}, {"field": "v", "operator": "greater_than", "value": 9})
        assert match_filter({"v": "10"}, {"field": "v", "operator": "equals", "value": 10})

    def test_unknown_operator_passes(self):
        assert apply_filters(SALES, [{"field": "amount", "operator": "weird", "value": 1}]) == SALES


class TestAggregate:
    """测试分组聚合"""

    def test_sum_by_group(self):
        result = aggregate(SALES, "category", [{"field": "amount", "function": "sum"}])
        assert result == [
            {"category": "A", "amount_sum": 15},
            {"category": "B", "amount_sum": 7},
        ]

    def test_multiple_functions(self):
        result = aggregate(
            SALES,
            "category",
            [
                {"field": "amount", "function": "avg"},
                {"field": "amount", "function": "count"},
                {"field": "region", "function": "count_distinct"},
            ],
        )
        assert result[0] == {
            "category": "A",
            "amount_avg": 7.5,
            "amount_count": 2,
            "region_count_distinct": 1,
        }

    def test_group_sums_add_up_to_total(self):
        """各组 sum 之和等于全部非空值之和"""
        rows = [
            {"g": "x", "c": 1},
            {"g": "y", "c": None},
            {"g": "x", "c": 2.5},
            {"g": "z", "c": 4},
            {"g": "y", "c": 3},
            {"g": None, "c": 5},
            {"g": "w", "c": None},
        ]
        result = aggregate(rows, "g", [{"field": "c", "function": "sum"}])
        expected = sum(r["c"] for r in rows if r["c"] is not None)
        assert sum(group["c_sum"] for group in result) == pytest.approx(expected)
        assert [group["g"] for group in result] == ["x", "y", "z", None, "w"]

    def test_without_group_by(self):
        result = aggregate(SALES, None, [{"field": "amount", "function": "max"}])
        assert result == [{"amount_max": 10}]

    def test_unsupported_function(self):
        with pytest.raises(BadInput):
            aggregate(SALES, "category", [{"field": "amount", "function": "median"}])

    def test_group_field_from_mapping(self):
        assert group_field({"category": "region"}) == "region"
        assert group_field({"x": "category"}, explicit="region") == "region"
        assert group_field({}) is None


class TestOperations:
    """测试数据集 transform 操作链"""

    def test_pipeline(self):
        operations = [
            {"op": "filter", "field": "amount", "operator": "greater_than_or_equal", "value": 5},
            {"op": "derive", "name": "double", "expression": "@.amount * 2"},
            {"op": "project", "fields": ["category", "double"]},
            {"op": "aggregate", "groupBy": "category", "agg": "sum", "on": "double"},
        ]
        result = apply_operations(SALES, operations)
        assert result == [
            {"category": "A", "double_sum": 30},
            {"category": "B", "double_sum": 14},
        ]

    def test_input_rows_not_modified(self):
        rows = [dict(r) for r in SALES]
        apply_operations(rows, [{"op": "derive", "name": "x", "expression": "1"}])
        assert rows == SALES

    def test_project_requires_fields(self):
        with pytest.raises(BadInput):
            project(SALES, [])

    def test_filter_operation_requires_operator(self):
        """filter 操作缺少 operator 时不能退化为全部通过"""
        with pytest.raises(BadInput):
            apply_operations(SALES, [{"op": "filter", "field": "amount", "value": 5}])

    def test_unknown_operation(self):
        with pytest.raises(BadInput):
            apply_operations(SALES, [{"op": "pivot"}])
