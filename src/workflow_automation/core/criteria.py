"""
进入条件与分支条件评估器
"""
import logging
from typing import Dict, Any, Optional, Callable
from datetime import datetime, date, timedelta, timezone

from ..models.workflow import (
    EntryCondition, EntryCriteria, ConditionOperator, MatchType, utcnow
)
from ..exceptions import EvaluationError


logger = logging.getLogger(__name__)


def to_datetime(value: Any) -> Optional[datetime]:
    """把字段值转换为带时区的 datetime，无法识别时返回 None"""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def to_number(value: Any) -> Optional[float]:
    """把字段值转换为数字，无法识别时返回 None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", ""))
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def values_equal(actual: Any, expected: Any) -> bool:
    """精确比较；标量类型不同时按字符串形式比较"""
    if actual == expected:
        return True
    if isinstance(actual, (list, dict)) or isinstance(expected, (list, dict)):
        return False
    if isinstance(actual, str) != isinstance(expected, str):
        return _as_text(actual) == _as_text(expected)
    return False


def _window(operator: ConditionOperator, now: datetime):
    """计算以评估时刻为锚点的日期窗口 [start, end)"""
    today = now.date()
    if operator == ConditionOperator.THIS_WEEK:
        start = today - timedelta(days=today.weekday())
        return start, start + timedelta(days=7)
    if operator == ConditionOperator.THIS_MONTH:
        start = today.replace(day=1)
    else:
        start = today.replace(month=3 * ((today.month - 1) // 3) + 1, day=1)
    months = 1 if operator == ConditionOperator.THIS_MONTH else 3
    month_index = start.month - 1 + months
    end = date(start.year + month_index // 12, month_index % 12 + 1, 1)
    return start, end


class CriteriaEvaluator:
    """条件评估器"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def evaluate(
        self,
        criteria: Optional[EntryCriteria],
        record: Dict[str, Any],
        now: datetime = None
    ) -> bool:
        """
        评估进入条件

        Args:
            criteria: 条件集合，为空时所有记录都满足
            record: 记录字段快照
            now: 评估时刻，默认当前时间

        Returns:
            bool: 记录是否满足进入条件
        """
        if criteria is None or not criteria.conditions:
            # all 下空条件恒为真；any 下空条件由校验器拒绝
            return criteria is None or criteria.match_type == MatchType.ALL

        now = now or self.clock()
        results = (
            self.evaluate_condition(condition, record, now)
            for condition in criteria.conditions
        )
        if criteria.match_type == MatchType.ALL:
            return all(results)
        return any(results)

    def evaluate_condition(
        self,
        condition: EntryCondition,
        record: Dict[str, Any],
        now: datetime = None,
        strict: bool = False
    ) -> bool:
        """
        评估单个条件

        strict=True 时字段不存在抛出 EvaluationError（用于分支节点）；
        否则按默认规则处理：is_null/not_equals 为真，其余为假。
        """
        operator = condition.operator
        if condition.field not in record:
            if strict:
                raise EvaluationError(condition.field)
            return operator in (ConditionOperator.IS_NULL, ConditionOperator.NOT_EQUALS)

        value = record[condition.field]
        if value is None:
            return operator in (ConditionOperator.IS_NULL, ConditionOperator.NOT_EQUALS)

        return self.compare(operator, value, condition.value, now or self.clock())

    def compare(
        self,
        operator: ConditionOperator,
        actual: Any,
        expected: Any,
        now: datetime
    ) -> bool:
        """对已存在的字段值应用运算符"""
        if operator == ConditionOperator.EQUALS:
            return values_equal(actual, expected)
        if operator == ConditionOperator.NOT_EQUALS:
            return not values_equal(actual, expected)
        if operator == ConditionOperator.CONTAINS:
            return self._contains(actual, expected)
        if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
            return self._ordered(operator, actual, expected)
        if operator == ConditionOperator.IS_NULL:
            return False
        if operator == ConditionOperator.IS_NOT_NULL:
            return True

        # this_week / this_month / this_quarter
        moment = to_datetime(actual)
        if moment is None:
            logger.debug(f"Value {actual!r} is not a date, {operator.value} evaluates to false")
            return False
        start, end = _window(operator, now)
        return start <= moment.astimezone(timezone.utc).date() < end

    def _contains(self, actual: Any, expected: Any) -> bool:
        """子串（忽略大小写）或数组成员"""
        if expected is None:
            return False
        if isinstance(actual, (list, tuple, set, frozenset)):
            return any(values_equal(item, expected) for item in actual)
        return _as_text(expected).lower() in _as_text(actual).lower()

    def _ordered(self, operator: ConditionOperator, actual: Any, expected: Any) -> bool:
        """数值比较，不是数字时尝试日期比较"""
        left, right = to_number(actual), to_number(expected)
        if left is None or right is None:
            left, right = to_datetime(actual), to_datetime(expected)
            if left is None or right is None:
                return False
        if operator == ConditionOperator.GREATER_THAN:
            return left > right
        return left < right
