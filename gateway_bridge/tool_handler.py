"""
工具处理模块
将工具定义和 tool_choice 指令转换为网关的 function-calling 格式
"""
import keyword
import logging
import re
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, create_model

from gateway_bridge.constants import ContentConstants, LogMessages
from gateway_bridge.models import ToolDefinition
from gateway_bridge.utils import safe_str

logger = logging.getLogger(__name__)

_INVALID_MODEL_CHARS = re.compile(r"[^0-9a-zA-Z_]")


def _model_name(name: str) -> str:
    cleaned = _INVALID_MODEL_CHARS.sub("_", name) or "Tool"
    return cleaned[0].upper() + cleaned[1:]


def _field_name(prop_name: str, position: int) -> Tuple[str, Optional[str]]:
    """pydantic 不接受的属性名改用占位字段名，并以原名作为别名"""
    if prop_name.isidentifier() and not keyword.iskeyword(prop_name) and not prop_name.startswith("_"):
        return prop_name, None
    return f"field_{position}", prop_name


def _with_description(annotation: Any, schema: Dict[str, Any], required: bool, alias: Optional[str] = None) -> Tuple[Any, Any]:
    """为字段附加描述，非必填字段变为 Optional 且默认 None"""
    description = schema.get("description")
    if not required:
        annotation = Optional[annotation]
        return annotation, Field(default=None, description=description, alias=alias)
    return annotation, Field(..., description=description, alias=alias)


def schema_to_annotation(schema: Dict[str, Any], name: str = "Field") -> Any:
    """
    将受限 JSON Schema 片段转换为 Python/pydantic 类型注解

    Args:
        schema: JSON Schema 片段
        name: 嵌套对象生成模型时使用的名称

    Returns:
        可用于 create_model 的类型注解
    """
    schema = schema or {}
    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        schema_type = schema_type[0] if schema_type else None

    if schema_type == "string":
        enum_values = schema.get("enum")
        annotation = Literal[tuple(enum_values)] if enum_values else str
    elif schema_type == "integer":
        annotation = int
    elif schema_type == "number":
        annotation = float
    elif schema_type == "boolean":
        annotation = bool
    elif schema_type == "array":
        items = schema.get("items")
        annotation = List[schema_to_annotation(items, f"{name}Item")] if items else List[Any]
    elif schema_type == "object":
        if schema.get("properties"):
            annotation = schema_to_model(schema, name)
        else:
            annotation = Dict[str, Any]
    elif schema_type == "null":
        annotation = type(None)
    elif schema.get("enum"):
        annotation = Literal[tuple(schema["enum"])]
    elif schema.get("anyOf") or schema.get("oneOf"):
        variants = schema.get("anyOf") or schema.get("oneOf")
        members = tuple(
            schema_to_annotation(variant, f"{name}Option{i}") for i, variant in enumerate(variants)
        )
        annotation = Union[members] if len(members) > 1 else members[0]
    else:
        annotation = Any

    if schema.get("nullable"):
        annotation = Optional[annotation]
    return annotation


def schema_to_model(schema: Dict[str, Any], name: str) -> Type[BaseModel]:
    """将 object 类型的 JSON Schema 转换为 pydantic 模型"""
    required_fields = set(schema.get("required") or [])
    fields = {}
    for position, (prop_name, prop_schema) in enumerate((schema.get("properties") or {}).items()):
        field_name, alias = _field_name(prop_name, position)
        annotation = schema_to_annotation(prop_schema or {}, _model_name(f"{name}_{field_name}"))
        fields[field_name] = _with_description(
            annotation, prop_schema or {}, prop_name in required_fields, alias
        )

    return create_model(
        _model_name(name),
        __config__=ConfigDict(protected_namespaces=(), populate_by_name=True),
        __doc__=schema.get("description"),
        **fields,
    )


def build_parameters_model(tool: ToolDefinition) -> Type[BaseModel]:
    """为工具的 input_schema 构建参数校验模型"""
    return schema_to_model(tool.input_schema or {}, _model_name(tool.name))


def _parameters_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    schema = model.model_json_schema(by_alias=True)
    # 模型名只是内部生成的，不向上游暴露
    schema.pop("title", None)
    return schema


def convert_tools(tools: Optional[List[ToolDefinition]]) -> Optional[List[Dict[str, Any]]]:
    """
    将工具定义转换为网关的 function 格式

    Args:
        tools: Messages API 的工具定义列表

    Returns:
        网关 function 工具列表；没有工具时返回 None
    """
    if not tools:
        return None

    converted = []
    for tool in tools:
        try:
            parameters = _parameters_schema(build_parameters_model(tool))
            logger.debug(LogMessages.TOOL_CONVERTED.format(tool.name))
        except Exception as e:
            logger.error(LogMessages.TOOL_CONVERSION_FAILED.format(tool.name, safe_str(e)))
            parameters = {"type": "object", "properties": {}}

        converted.append({
            "type": ContentConstants.FUNCTION_TYPE,
            "function": {
                "name": tool.name,
                "description": tool.description or "",
                "parameters": parameters,
            },
        })
    return converted


def convert_tool_choice(tool_choice: Optional[Union[str, Dict[str, Any]]]) -> Optional[Union[str, Dict[str, Any]]]:
    """
    转换 tool_choice 指令

    无法识别的指令一律回退为 "auto"。
    """
    if tool_choice is None:
        return None

    if isinstance(tool_choice, str):
        choice_type, name = tool_choice, None
    elif isinstance(tool_choice, dict):
        choice_type, name = tool_choice.get("type"), tool_choice.get("name")
    else:
        return "auto"

    if choice_type == "auto":
        return "auto"
    if choice_type == "none":
        return "none"
    if choice_type == "any":
        return "required"
    if choice_type == "tool" and name:
        return {"type": ContentConstants.FUNCTION_TYPE, "function": {"name": name}}
    return "auto"
