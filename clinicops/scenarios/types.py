"""
步骤场景的内存结构。

ScenarioStep  step_items 表一行的纯数据版本（不带 DB id）
FlowGraph     flow-builder 编辑器使用的节点 + 连线

持久化形式是有序的 step 列表，分支用「位置下标」引用；
编辑器形式是图。两者之间的转换在 compiler.py。
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from ..exceptions import ValidationError

STEP_TYPES = ("send_text", "send_template", "tag_add", "tag_remove", "mark_change", "condition")
DELAY_TYPES = ("days", "hours", "minutes")
SEND_STEP_TYPES = ("send_text", "send_template")


def to_int(value, field_name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} は整数で指定してください", code="INVALID_STEP")


@dataclass
class ScenarioStep:
    step_type: str = "send_text"
    sort_order: int = 0
    delay_type: str = "days"
    delay_value: int = 1
    send_time: str | None = None
    content: str | None = None
    template_id: int | None = None
    tag_id: int | None = None
    mark: str | None = None
    condition_rules: list[dict] = field(default_factory=list)
    branch_true_step: int | None = None
    branch_false_step: int | None = None
    exit_condition_rules: list[dict] = field(default_factory=list)
    exit_action: str = "exit"
    exit_jump_to: int | None = None

    # ── 构造 / 输出 ─────────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict) -> "ScenarioStep":
        delay_value = data.get("delay_value")
        return cls(
            step_type=data.get("step_type") or "send_text",
            sort_order=to_int(data.get("sort_order") or 0, "sort_order"),
            delay_type=data.get("delay_type") or "days",
            delay_value=1 if delay_value is None else to_int(delay_value, "delay_value"),
            send_time=data.get("send_time") or None,
            content=data.get("content") or None,
            template_id=data.get("template_id") or None,
            tag_id=data.get("tag_id") or None,
            mark=data.get("mark") or None,
            condition_rules=list(data.get("condition_rules") or []),
            branch_true_step=data.get("branch_true_step"),
            branch_false_step=data.get("branch_false_step"),
            exit_condition_rules=list(data.get("exit_condition_rules") or []),
            exit_action=data.get("exit_action") or "exit",
            exit_jump_to=data.get("exit_jump_to"),
        )

    @classmethod
    def from_model(cls, item) -> "ScenarioStep":
        return cls(
            step_type=item.step_type,
            sort_order=item.sort_order,
            delay_type=item.delay_type,
            delay_value=item.delay_value,
            send_time=item.send_time,
            content=item.content,
            template_id=item.template_id,
            tag_id=item.tag_id,
            mark=item.mark,
            condition_rules=list(item.condition_rules or []),
            branch_true_step=item.branch_true_step,
            branch_false_step=item.branch_false_step,
            exit_condition_rules=list(item.exit_condition_rules or []),
            exit_action=item.exit_action or "exit",
            exit_jump_to=item.exit_jump_to,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def payload(self) -> dict:
        """除 sort_order / 分支引用以外的字段，用于比较「内容是否一致」。"""
        data = self.to_dict()
        for key in ("sort_order", "branch_true_step", "branch_false_step"):
            data.pop(key)
        return data

    # ── 不变量 ─────────────────────────────────────────────────────────────

    @property
    def is_condition(self) -> bool:
        return self.step_type == "condition"

    def normalized(self) -> "ScenarioStep":
        """
        condition 步骤没有发送内容；非 condition 步骤没有分支引用。
        """
        data = self.to_dict()
        if self.is_condition:
            data["content"] = None
            data["template_id"] = None
        else:
            data["branch_true_step"] = None
            data["branch_false_step"] = None
        return ScenarioStep(**data)

    def validate(self, index: int) -> list[dict]:
        errors = []
        if self.step_type not in STEP_TYPES:
            errors.append({"field": f"steps[{index}].step_type", "message": f"不明なステップ種別: {self.step_type}"})
        if self.delay_type not in DELAY_TYPES:
            errors.append({"field": f"steps[{index}].delay_type", "message": f"不明な待機単位: {self.delay_type}"})
        if self.delay_value < 0:
            errors.append({"field": f"steps[{index}].delay_value", "message": "待機時間は 0 以上で指定してください"})
        return errors


# ── Flow graph ──────────────────────────────────────────────────────────────

NODE_TYPES = ("send", "condition", "wait", "tag")
PORTS = ("bottom", "true", "false")


@dataclass
class FlowNode:
    id: str
    type: str
    label: str
    x: float
    y: float
    width: float
    height: float
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FlowEdge:
    id: str
    from_node: str
    to_node: str
    from_port: str = "bottom"
    to_port: str = "top"
    label: str | None = None
    color: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "from": self.from_node,
            "to": self.to_node,
            "fromPort": self.from_port,
            "toPort": self.to_port,
        }
        if self.label is not None:
            data["label"] = self.label
        if self.color is not None:
            data["color"] = self.color
        return data


@dataclass
class FlowGraph:
    nodes: list[FlowNode] = field(default_factory=list)
    edges: list[FlowEdge] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, payload) -> "FlowGraph":
        """
        解析编辑器提交的 JSON。

        Raises:
            ValidationError: 结构不对（不是 dict、缺 id / from / to、端口非法）
        """
        if not isinstance(payload, dict):
            raise ValidationError("フローデータが不正です", code="INVALID_FLOW_GRAPH")

        raw_nodes = payload.get("nodes") or []
        raw_edges = payload.get("edges") or []
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise ValidationError("nodes / edges は配列で指定してください", code="INVALID_FLOW_GRAPH")

        errors = []
        nodes = []
        for i, raw in enumerate(raw_nodes):
            if not isinstance(raw, dict) or not raw.get("id"):
                errors.append({"field": f"nodes[{i}].id", "message": "ノードIDがありません"})
                continue
            node_type = raw.get("type") or "send"
            if node_type not in NODE_TYPES:
                errors.append({"field": f"nodes[{i}].type", "message": f"不明なノード種別: {node_type}"})
                continue
            nodes.append(FlowNode(
                id=str(raw["id"]),
                type=node_type,
                label=raw.get("label") or "",
                x=raw.get("x") or 0,
                y=raw.get("y") or 0,
                width=raw.get("width") or 0,
                height=raw.get("height") or 0,
                data=dict(raw.get("data") or {}),
            ))

        edges = []
        for i, raw in enumerate(raw_edges):
            if not isinstance(raw, dict) or not raw.get("from") or not raw.get("to"):
                errors.append({"field": f"edges[{i}]", "message": "エッジの from / to がありません"})
                continue
            port = raw.get("fromPort") or "bottom"
            if port not in PORTS:
                errors.append({"field": f"edges[{i}].fromPort", "message": f"不明なポート: {port}"})
                continue
            edges.append(FlowEdge(
                id=str(raw.get("id") or f"edge-{raw['from']}-{raw['to']}"),
                from_node=str(raw["from"]),
                to_node=str(raw["to"]),
                from_port=port,
                to_port=raw.get("toPort") or "top",
                label=raw.get("label"),
                color=raw.get("color"),
            ))

        if errors:
            raise ValidationError(errors[0]["message"], code="INVALID_FLOW_GRAPH", detail={"errors": errors})

        return cls(nodes=nodes, edges=edges)
