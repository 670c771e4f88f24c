"""Scripted conversation flows.

A flow is a store-defined graph of nodes (messages, questions, button
choices, conditions, handoff) that takes priority over free-form AI
replies. While a flow waits for an answer its position is kept in
``conversations.flow_state``.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from shopbot.logging_config import get_logger
from shopbot.models import Conversation, Flow
from shopbot.schemas.outbound import QuickReplyOption
from shopbot.services.intent_service import classify_intent, is_substantive, normalize_text
from shopbot.services.state_machine import ConversationStatus, can_transition

logger = get_logger("flow_service")

MAX_NODES = 50
FLOW_STATUS_ACTIVE = "active"
HANDOFF_DEFAULT_MESSAGE = "Та түр хүлээнэ үү, оператор тантай холбогдоно."
CHOICE_PROMPT = "Дараах сонголтуудаас сонгоно уу:"
BUTTON_PAYLOAD = re.compile(r"^flow_btn_(\d+)_")

VALIDATION_ERRORS = {
    "phone": "Зөв утасны дугаар оруулна уу (жиш: 99001122).",
    "email": "Зөв имэйл хаяг оруулна уу.",
    "number": "Тоо оруулна уу.",
    "date": "Огноо оруулна уу (жиш: 2024-02-15).",
}
DEFAULT_VALIDATION_ERROR = "Хариу оруулна уу."

PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]{6,15}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NUMBER_PATTERN = re.compile(r"^\d+([.,]\d+)?$")
DATE_WORDS = re.compile(
    r"^(өнөөдөр|маргааш|нөгөөдөр|даваа|мягмар|лхагва|пүрэв|баасан|бямба|ням|"
    r"(энэ|ирэх|дараа)\s*долоо\s*хоног)"
)
VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")


@dataclass
class FlowContext:
    is_new_conversation: bool = False
    quick_reply_payload: Optional[str] = None
    classified_intent: Optional[str] = None


@dataclass
class FlowMessage:
    text: str
    quick_replies: List[QuickReplyOption] = field(default_factory=list)


@dataclass
class FlowStepResult:
    messages: List[FlowMessage]
    new_state: Optional[dict]
    completed: bool
    handoff: bool = False


@dataclass
class FlowResult:
    flow_id: str
    response: Optional[str] = None
    quick_replies: List[QuickReplyOption] = field(default_factory=list)
    completed: bool = False


# Trigger matching


def _keyword_trigger_matches(config: dict, normalized_message: str) -> bool:
    keywords = [normalize_text(str(k)) for k in config.get("keywords") or []]
    keywords = [k for k in keywords if k]
    if not keywords:
        return False

    words = normalized_message.split()

    def hit(keyword: str) -> bool:
        return any(keyword in word for word in words)

    if config.get("match_mode") == "all":
        return all(hit(k) for k in keywords)
    return any(hit(k) for k in keywords)


def matches_trigger(flow: Flow, normalized_message: str, context: FlowContext) -> bool:
    config = flow.trigger_config or {}
    trigger_type = flow.trigger_type

    if trigger_type == "keyword":
        return _keyword_trigger_matches(config, normalized_message)
    if trigger_type == "new_conversation":
        # A first message with a real question goes to the AI instead of the welcome flow
        return context.is_new_conversation and not is_substantive(context.classified_intent)
    if trigger_type == "button_click":
        return bool(context.quick_reply_payload) and context.quick_reply_payload == config.get("payload")
    if trigger_type == "intent_match":
        return bool(context.classified_intent) and context.classified_intent in (config.get("intents") or [])
    return False


def find_matching_flow(db: Session, store_id: UUID, message: str, context: FlowContext) -> Optional[Flow]:
    flows = (
        db.query(Flow)
        .filter(Flow.store_id == store_id, Flow.status == FLOW_STATUS_ACTIVE)
        .order_by(Flow.priority.asc())
        .all()
    )
    if not flows:
        return None

    if context.classified_intent is None:
        intent = classify_intent(message)
        context.classified_intent = intent.value if intent else None

    normalized = normalize_text(message)
    for flow in flows:
        if matches_trigger(flow, normalized, context):
            return flow
    return None


# Graph helpers


def interpolate_variables(text: str, variables: Dict[str, Any]) -> str:
    def replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return VARIABLE_PATTERN.sub(replace, text or "")


def validate_input(value: str, rule: Optional[str] = None) -> bool:
    value = value.strip()
    if not rule or rule == "text":
        return len(value) > 0
    if rule == "phone":
        return PHONE_PATTERN.match(value) is not None
    if rule == "email":
        return EMAIL_PATTERN.match(value) is not None
    if rule == "number":
        return NUMBER_PATTERN.match(value) is not None
    if rule == "date":
        if len(value) < 2:
            return False
        if any(ch.isdigit() for ch in value):
            return True
        return DATE_WORDS.match(value.lower()) is not None
    return True


def _find_node(flow: Flow, node_id: Optional[str]) -> Optional[dict]:
    for node in flow.nodes or []:
        if node.get("id") == node_id:
            return node
    return None


def _node_config(node: dict) -> dict:
    return (node.get("data") or {}).get("config") or {}


def _next_node_id(flow: Flow, node_id: str) -> Optional[str]:
    edges = [e for e in flow.edges or [] if e.get("source") == node_id]
    for edge in edges:
        if not edge.get("sourceHandle"):
            return edge.get("target")
    return edges[0].get("target") if edges else None


def _edge_for_handle(flow: Flow, node_id: str, handle: str) -> Optional[str]:
    for edge in flow.edges or []:
        if edge.get("source") == node_id and edge.get("sourceHandle") == handle:
            return edge.get("target")
    return None


def _start_node_id(flow: Flow) -> Optional[str]:
    nodes = flow.nodes or []
    for node in nodes:
        if node.get("type") == "trigger":
            return node.get("id")
    return nodes[0].get("id") if nodes else None


def _evaluate_condition(flow: Flow, node: dict, variables: Dict[str, Any]) -> Optional[str]:
    config = _node_config(node)
    for index, condition in enumerate(config.get("conditions") or []):
        raw = variables.get(condition.get("variable"))
        current = "" if raw is None else str(raw)
        expected = str(condition.get("value", ""))
        operator = condition.get("operator")

        if operator == "equals":
            matched = current.lower() == expected.lower()
        elif operator == "contains":
            matched = expected.lower() in current.lower()
        elif operator in ("greater_than", "less_than"):
            try:
                left, right = float(current.replace(",", ".")), float(expected.replace(",", "."))
            except ValueError:
                matched = False
            else:
                matched = left > right if operator == "greater_than" else left < right
        elif operator == "exists":
            matched = raw is not None and len(current) > 0
        else:
            matched = False

        if matched:
            target = condition.get("next_node_id") or _edge_for_handle(flow, node["id"], f"condition_{index}")
            if target:
                return target

    return config.get("default_node_id") or _edge_for_handle(flow, node["id"], "default")


def _select_button(buttons: List[dict], message: str, payload: Optional[str]) -> Optional[int]:
    if payload:
        match = BUTTON_PAYLOAD.match(payload)
        if match and int(match.group(1)) < len(buttons):
            return int(match.group(1))

    answer = message.strip().lower()
    for index, button in enumerate(buttons):
        if answer in (str(button.get("label", "")).lower(), str(button.get("value", "")).lower()):
            return index

    if answer.isdigit() and 0 < int(answer) <= len(buttons):
        return int(answer) - 1

    if answer:
        for index, button in enumerate(buttons):
            label = str(button.get("label", "")).lower()
            if label and (answer in label or label in answer):
                return index
    return None


def _button_replies(buttons: List[dict]) -> List[QuickReplyOption]:
    return [
        QuickReplyOption(title=str(b.get("label", "")), payload=f"flow_btn_{i}_{b.get('value', '')}")
        for i, b in enumerate(buttons)
    ]


# Execution


def start_state(flow: Flow) -> dict:
    return {
        "flow_id": str(flow.id),
        "current_node_id": _start_node_id(flow),
        "variables": {},
        "waiting_for_input": False,
        "started_at": datetime.now(timezone.utc).isoformat(),
    }


def execute_flow_step(
    flow: Flow,
    state: dict,
    user_message: str,
    quick_reply_payload: Optional[str] = None,
) -> FlowStepResult:
    """Advance the flow by one customer message.

    Consumes the answer when the current node is waiting for input, then
    walks forward until the next input node or the end of the flow.
    """
    messages: List[FlowMessage] = []
    variables = dict(state.get("variables") or {})
    current_id = state.get("current_node_id")

    if state.get("waiting_for_input"):
        node = _find_node(flow, current_id)
        if node is None:
            logger.warning("Flow node not found, ending flow", extra={"context": {"flow_id": str(flow.id), "node": current_id}})
            return FlowStepResult(messages, None, True)

        config = _node_config(node)
        if node.get("type") == "ask_question":
            if not validate_input(user_message, config.get("validation")):
                error = config.get("error_message") or VALIDATION_ERRORS.get(
                    config.get("validation"), DEFAULT_VALIDATION_ERROR
                )
                messages.append(FlowMessage(error))
                return FlowStepResult(messages, {**state, "variables": variables}, False)
            variables[config.get("variable_name") or node["id"]] = user_message.strip()
            current_id = _next_node_id(flow, node["id"])
        elif node.get("type") == "button_choice":
            buttons = config.get("buttons") or []
            index = _select_button(buttons, user_message, quick_reply_payload)
            if index is None:
                options = "\n".join(f"{i + 1}. {b.get('label', '')}" for i, b in enumerate(buttons))
                messages.append(FlowMessage(f"{CHOICE_PROMPT}\n{options}", _button_replies(buttons)))
                return FlowStepResult(messages, {**state, "variables": variables}, False)
            variables[config.get("variable_name") or node["id"]] = buttons[index].get("value")
            current_id = _edge_for_handle(flow, node["id"], f"button_{index}") or _next_node_id(flow, node["id"])
        else:
            current_id = _next_node_id(flow, node["id"])

    visited = 0
    while current_id and visited < MAX_NODES:
        visited += 1
        node = _find_node(flow, current_id)
        if node is None:
            break
        node_type = node.get("type")
        config = _node_config(node)

        if node_type == "send_message":
            messages.append(FlowMessage(interpolate_variables(config.get("text", ""), variables)))
            current_id = _next_node_id(flow, current_id)
        elif node_type == "ask_question":
            messages.append(FlowMessage(interpolate_variables(config.get("question_text", ""), variables)))
            return FlowStepResult(
                messages,
                {**state, "current_node_id": current_id, "variables": variables, "waiting_for_input": True},
                False,
            )
        elif node_type == "button_choice":
            buttons = config.get("buttons") or []
            # quick replies cannot be sent without text
            question = interpolate_variables(config.get("question_text", ""), variables).strip() or CHOICE_PROMPT
            messages.append(FlowMessage(question, _button_replies(buttons)))
            return FlowStepResult(
                messages,
                {**state, "current_node_id": current_id, "variables": variables, "waiting_for_input": True},
                False,
            )
        elif node_type == "condition":
            current_id = _evaluate_condition(flow, node, variables)
        elif node_type == "handoff":
            text = config.get("message") or HANDOFF_DEFAULT_MESSAGE
            messages.append(FlowMessage(interpolate_variables(text, variables)))
            return FlowStepResult(messages, None, True, handoff=True)
        elif node_type == "end":
            if config.get("message"):
                messages.append(FlowMessage(interpolate_variables(config["message"], variables)))
            return FlowStepResult(messages, None, True)
        else:
            # trigger and presentation-only nodes just pass through
            current_id = _next_node_id(flow, current_id)

    if not current_id:
        return FlowStepResult(messages, None, True)

    logger.warning("Flow walk limit reached", extra={"context": {"flow_id": str(flow.id), "node": current_id}})
    return FlowStepResult(
        messages,
        {**state, "current_node_id": current_id, "variables": variables, "waiting_for_input": False},
        False,
    )


def _to_result(flow: Flow, step: FlowStepResult) -> FlowResult:
    texts = [m.text for m in step.messages if m.text]
    quick_replies: List[QuickReplyOption] = []
    for message in step.messages:
        if message.quick_replies:
            quick_replies = message.quick_replies
    return FlowResult(
        flow_id=str(flow.id),
        response="\n\n".join(texts) or None,
        quick_replies=quick_replies,
        completed=step.completed,
    )


def _load_flow(db: Session, store_id: UUID, flow_id: Any) -> Optional[Flow]:
    try:
        flow_uuid = flow_id if isinstance(flow_id, UUID) else UUID(str(flow_id))
    except ValueError:
        return None
    return (
        db.query(Flow)
        .filter(Flow.id == flow_uuid, Flow.store_id == store_id, Flow.status == FLOW_STATUS_ACTIVE)
        .first()
    )


def intercept_flow(
    db: Session,
    conversation_id: UUID,
    store_id: UUID,
    message_text: str,
    context: FlowContext,
) -> Optional[FlowResult]:
    """Continue or start a flow for this message.

    Returns None when no flow applies and the AI should answer.
    """
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        return None

    state = conversation.flow_state or None
    if state and state.get("flow_id"):
        flow = _load_flow(db, store_id, state["flow_id"])
        if flow is None:
            logger.info("Active flow no longer available, clearing state", extra={"context": {"conversation_id": str(conversation_id)}})
            conversation.flow_state = None
            db.flush()
            return None
    else:
        flow = find_matching_flow(db, store_id, message_text, context)
        if flow is None:
            return None
        state = start_state(flow)
        flow.times_triggered = (flow.times_triggered or 0) + 1
        logger.info(
            "Flow triggered",
            extra={"context": {"flow_id": str(flow.id), "conversation_id": str(conversation_id), "trigger": flow.trigger_type}},
        )

    step = execute_flow_step(flow, state, message_text, context.quick_reply_payload)

    conversation.flow_state = step.new_state
    if step.completed:
        flow.times_completed = (flow.times_completed or 0) + 1
    if step.handoff and can_transition(ConversationStatus(conversation.status), ConversationStatus.ESCALATED):
        conversation.status = ConversationStatus.ESCALATED.value
        conversation.escalated_at = datetime.now(timezone.utc)
    db.flush()

    return _to_result(flow, step)
