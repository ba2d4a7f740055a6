"""
ScenarioGraphCompiler — step 列表 ⇔ flow-builder 图 的相互转换。

steps_to_graph(steps)
  每个 step → 一个 node-N（N = 列表下标）
  delay_value > 0 的非 condition step 前面插一个 wait-N 节点（只用于显示）
  相邻 step 之间连 bottom 边；上一个是 condition 时不连（由 true/false 边代替）
  condition step：
    true  边 → branch_true_step；没有或越界时 → 下一个 step
    false 边 → branch_false_step；只有显式目标才画

graph_to_steps(graph)
  去掉 wait 节点，按 node-N 的 N 排序（解析不出 N 的排在后面，保持原顺序）
  delay 优先从配对的 wait-N 读取
  true/false 边的目标 → 目标节点在输出列表里的位置下标
  sort_order 重新编号为 0..n-1

save_scenario_graph() 整体替换场景的所有 step（先删后插，同一个事务）。
"""

import logging
import re

from django.db import transaction

from ..exceptions import NotFoundError, ValidationError
from ..models import StepItem, StepScenario
from ..repository import TenantRepository
from .types import FlowEdge, FlowGraph, FlowNode, ScenarioStep, to_int

logger = logging.getLogger(__name__)

_scenarios = TenantRepository(StepScenario)
_items = TenantRepository(StepItem)

# ── 布局常量（只影响显示） ──────────────────────────────────────────────────
NODE_WIDTH = 220
NODE_HEIGHT = 80
CONDITION_NODE_HEIGHT = 100
WAIT_NODE_HEIGHT = 50
NODE_GAP_X = 300
NODE_GAP_Y = 140
START_X = 100
START_Y = 80

TRUE_COLOR = "#22c55e"
FALSE_COLOR = "#ef4444"

STEP_TYPE_TO_NODE_TYPE = {
    "send_text": "send",
    "send_template": "send",
    "condition": "condition",
    "tag_add": "tag",
    "tag_remove": "tag",
    "mark_change": "tag",
}

STEP_TYPE_LABELS = {
    "send_text": "テキスト送信",
    "send_template": "テンプレート送信",
    "condition": "条件分岐",
    "tag_add": "タグ追加",
    "tag_remove": "タグ除去",
    "mark_change": "マーク変更",
}

_NODE_ID_RE = re.compile(r"^node-(\d+)$")
_WAIT_ID_RE = re.compile(r"^wait-(\d+)$")


# ── 标签 ───────────────────────────────────────────────────────────────────

def format_delay(delay_type: str, delay_value: int, send_time: str | None) -> str:
    unit = {"minutes": "分", "hours": "時間"}.get(delay_type, "日")
    text = f"{delay_value}{unit}後"
    if delay_type == "days" and send_time:
        text += f" {send_time}"
    return text


def build_node_label(step: ScenarioStep) -> str:
    base = STEP_TYPE_LABELS.get(step.step_type, step.step_type)
    if step.step_type == "send_text" and step.content:
        suffix = "..." if len(step.content) > 30 else ""
        return f"{base}\n{step.content[:30]}{suffix}"
    if step.step_type == "send_template" and step.template_id:
        return f"{base}\nID: {step.template_id}"
    if step.step_type == "condition" and step.condition_rules:
        return f"{base}\n{len(step.condition_rules)}件の条件"
    if step.step_type in ("tag_add", "tag_remove") and step.tag_id:
        return f"{base}\nタグID: {step.tag_id}"
    if step.step_type == "mark_change" and step.mark:
        return f"{base}\n{step.mark}"
    return base


def _node_data(step: ScenarioStep) -> dict:
    data = step.to_dict()
    data.pop("sort_order")
    return data


def _wait_data(step: ScenarioStep) -> dict:
    data = ScenarioStep(
        delay_type=step.delay_type,
        delay_value=step.delay_value,
        send_time=step.send_time,
    ).to_dict()
    data.pop("sort_order")
    data["step_type"] = "wait"
    return data


def _valid_target(target, count: int) -> bool:
    return isinstance(target, int) and not isinstance(target, bool) and 0 <= target < count


# ── steps → graph ──────────────────────────────────────────────────────────

def steps_to_graph(steps: list[ScenarioStep]) -> FlowGraph:
    graph = FlowGraph()
    if not steps:
        return graph

    count = len(steps)
    x_offsets: dict[int, int] = {}

    for index, step in enumerate(steps):
        node_id = f"node-{index}"
        x = START_X + x_offsets.get(index, 0)
        y = START_Y + index * NODE_GAP_Y
        previous = steps[index - 1] if index > 0 else None
        link_previous = previous is not None and not previous.is_condition

        if not step.is_condition and step.delay_value > 0:
            wait_id = f"wait-{index}"
            graph.nodes.append(FlowNode(
                id=wait_id,
                type="wait",
                label=format_delay(step.delay_type, step.delay_value, step.send_time),
                x=x,
                y=y - NODE_GAP_Y / 3,
                width=NODE_WIDTH,
                height=WAIT_NODE_HEIGHT,
                data=_wait_data(step),
            ))
            if link_previous:
                graph.edges.append(FlowEdge(
                    id=f"edge-node-{index - 1}-{wait_id}",
                    from_node=f"node-{index - 1}",
                    to_node=wait_id,
                ))
            graph.edges.append(FlowEdge(id=f"edge-{wait_id}-{node_id}", from_node=wait_id, to_node=node_id))
        elif link_previous:
            graph.edges.append(FlowEdge(
                id=f"edge-node-{index - 1}-{node_id}",
                from_node=f"node-{index - 1}",
                to_node=node_id,
            ))

        node_type = STEP_TYPE_TO_NODE_TYPE.get(step.step_type, "send")
        graph.nodes.append(FlowNode(
            id=node_id,
            type=node_type,
            label=build_node_label(step),
            x=x,
            y=y,
            width=NODE_WIDTH,
            height=CONDITION_NODE_HEIGHT if node_type == "condition" else NODE_HEIGHT,
            data=_node_data(step),
        ))

        if not step.is_condition:
            continue

        true_target = step.branch_true_step
        if not _valid_target(true_target, count):
            true_target = index + 1 if index + 1 < count else None
        if true_target is not None:
            graph.edges.append(FlowEdge(
                id=f"edge-{node_id}-true",
                from_node=node_id,
                to_node=f"node-{true_target}",
                from_port="true",
                label="True",
                color=TRUE_COLOR,
            ))

        if _valid_target(step.branch_false_step, count):
            graph.edges.append(FlowEdge(
                id=f"edge-{node_id}-false",
                from_node=node_id,
                to_node=f"node-{step.branch_false_step}",
                from_port="false",
                label="False",
                color=FALSE_COLOR,
            ))
            x_offsets[step.branch_false_step] = NODE_GAP_X

    return graph


# ── graph → steps ──────────────────────────────────────────────────────────

def _main_node_order(graph: FlowGraph) -> list[FlowNode]:
    indexed, unindexed = [], []
    for node in graph.nodes:
        if node.type == "wait":
            continue
        match = _NODE_ID_RE.match(node.id)
        if match:
            indexed.append((int(match.group(1)), node))
        else:
            unindexed.append(node)
    indexed.sort(key=lambda pair: pair[0])
    return [node for _, node in indexed] + unindexed


def graph_to_steps(graph: FlowGraph) -> list[ScenarioStep]:
    main_nodes = _main_node_order(graph)
    if not main_nodes:
        return []

    position = {node.id: i for i, node in enumerate(main_nodes)}
    waits = {node.id: node for node in graph.nodes if node.type == "wait"}

    # 目标是 wait-N 时，视为 node-N
    def resolve(target_id: str):
        match = _WAIT_ID_RE.match(target_id)
        if match:
            target_id = f"node-{match.group(1)}"
        return position.get(target_id)

    def branch_edge(node_id: str, port: str):
        for edge in graph.edges:
            if edge.from_node == node_id and edge.from_port == port:
                return edge
        return None

    steps = []
    for sort_order, node in enumerate(main_nodes):
        data = dict(node.data)
        step = ScenarioStep.from_dict(data)
        step.sort_order = sort_order

        match = _NODE_ID_RE.match(node.id)
        wait = waits.get(f"wait-{match.group(1)}") if match else None
        if wait is not None:
            step.delay_type = wait.data.get("delay_type") or step.delay_type
            wait_value = wait.data.get("delay_value")
            if wait_value is not None:
                step.delay_value = to_int(wait_value, "delay_value")
            step.send_time = wait.data.get("send_time") or step.send_time

        if step.is_condition:
            # 有边就以边为准；data 里的旧引用按原下标换算
            true_edge = branch_edge(node.id, "true")
            false_edge = branch_edge(node.id, "false")
            step.branch_true_step = (
                resolve(true_edge.to_node) if true_edge
                else resolve(f"node-{step.branch_true_step}") if step.branch_true_step is not None
                else None
            )
            step.branch_false_step = (
                resolve(false_edge.to_node) if false_edge
                else resolve(f"node-{step.branch_false_step}") if step.branch_false_step is not None
                else None
            )

        steps.append(step.normalized())

    return steps


# ── 持久化 ─────────────────────────────────────────────────────────────────

def _get_scenario(tenant_id, scenario_id) -> StepScenario:
    scenario = _scenarios.first(tenant_id, id=scenario_id)
    if scenario is None:
        raise NotFoundError(
            message="シナリオが見つかりません",
            code="SCENARIO_NOT_FOUND",
            detail={"scenario_id": scenario_id},
        )
    return scenario


def load_scenario_steps(tenant_id, scenario_id) -> list[ScenarioStep]:
    scenario = _get_scenario(tenant_id, scenario_id)
    items = _items.filter(tenant_id, scenario=scenario).order_by("sort_order", "id")
    return [ScenarioStep.from_model(item) for item in items]


def load_scenario_graph(tenant_id, scenario_id) -> FlowGraph:
    return steps_to_graph(load_scenario_steps(tenant_id, scenario_id))


def save_scenario_graph(tenant_id, scenario_id, graph: FlowGraph) -> list[ScenarioStep]:
    """
    用 graph 整体替换场景的 step 列表。不支持部分更新。

    Raises:
        NotFoundError:   场景不存在
        ValidationError: step 字段非法
    """
    scenario = _get_scenario(tenant_id, scenario_id)
    steps = graph_to_steps(graph)

    errors = []
    for i, step in enumerate(steps):
        errors.extend(step.validate(i))
    if errors:
        raise ValidationError(errors[0]["message"], code="INVALID_STEP", detail={"errors": errors})

    with transaction.atomic():
        _items.delete(tenant_id, scenario=scenario)
        StepItem.objects.bulk_create([
            StepItem(tenant_id=tenant_id, scenario=scenario, **step.to_dict())
            for step in steps
        ])

    logger.info("[flow-builder] scenario=%s tenant=%s 保存 %d 个步骤", scenario_id, tenant_id, len(steps))
    return steps
