"""
模板变量解析
"""
import re
import logging
from typing import Dict, Any, Optional, Callable, List
from datetime import datetime, date

from ..config import PracticeProfile
from ..models.workflow import ObjectType, utcnow


logger = logging.getLogger(__name__)


TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


# 各对象类型可用的记录变量
OBJECT_VARIABLES: Dict[ObjectType, List[str]] = {
    ObjectType.LEAD: [
        "first_name", "last_name", "full_name", "email", "phone",
        "expected_due_date", "gestational_age", "birth_location", "birth_preferences",
        "status", "lifecycle_stage", "service_interest",
    ],
    ObjectType.MEETING: [
        "title", "meeting_type", "scheduled_at", "duration", "location", "meeting_link",
    ],
    ObjectType.PAYMENT: ["amount", "description", "payment_method", "status"],
    ObjectType.INVOICE: ["invoice_number", "amount", "due_date", "status"],
    ObjectType.SERVICE: ["name", "description", "price"],
    ObjectType.DOCUMENT: ["title", "document_type", "created_at"],
    ObjectType.CONTRACT: ["title", "status", "sent_at", "signed_at"],
    ObjectType.INTAKE_FORM: ["form_name", "submitted_at"],
}

# 所有对象类型通用的变量
COMMON_VARIABLES = ["doula_name", "doula_email", "doula_phone", "portal_url", "current_date"]


def _format(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class VariableResolver:
    """{{token}} 占位符替换（单遍、不递归，未解析的占位符原样保留）"""

    def __init__(
        self,
        practice: PracticeProfile = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.practice = practice or PracticeProfile()
        self.clock = clock

    def build_context(self, object_type: ObjectType, record: Dict[str, Any]) -> Dict[str, str]:
        """构建变量表：对象变量 + 公共变量，值为空的变量不进入变量表"""
        values: Dict[str, Any] = {}

        for name in OBJECT_VARIABLES.get(object_type, []):
            if record.get(name) is not None:
                values[name] = record[name]

        if "full_name" in OBJECT_VARIABLES.get(object_type, []) and "full_name" not in values:
            parts = [record.get("first_name"), record.get("last_name")]
            full_name = " ".join(str(p) for p in parts if p)
            if full_name:
                values["full_name"] = full_name

        common = {
            "doula_name": self.practice.doula_name,
            "doula_email": self.practice.doula_email,
            "doula_phone": self.practice.doula_phone,
            "portal_url": self.practice.portal_url,
            "current_date": self.clock().date(),
        }
        for name in COMMON_VARIABLES:
            if common.get(name) not in (None, ""):
                values[name] = common[name]

        return {name: _format(value) for name, value in values.items()}

    def resolve(self, text: Optional[str], variables: Dict[str, str]) -> Optional[str]:
        """替换文本中的占位符"""
        if not text:
            return text

        unresolved = []

        def substitute(match: "re.Match") -> str:
            name = match.group(1)
            if name in variables:
                return variables[name]
            unresolved.append(name)
            return match.group(0)

        result = TOKEN_PATTERN.sub(substitute, text)
        if unresolved:
            logger.warning(f"Unresolved template variables left in place: {unresolved}")
        return result

    def resolve_value(self, value: Any, variables: Dict[str, str]) -> Any:
        """递归处理字典/列表中的字符串值（每个字符串仍只替换一遍）"""
        if isinstance(value, str):
            return self.resolve(value, variables)
        if isinstance(value, dict):
            return {k: self.resolve_value(v, variables) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v, variables) for v in value]
        return value
