import uuid

import pytest

from shopbot.models import Conversation, Flow
from shopbot.services.conversation_service import create_customer, get_or_create_conversation
from shopbot.services.flow_service import (
    CHOICE_PROMPT,
    HANDOFF_DEFAULT_MESSAGE,
    MAX_NODES,
    FlowContext,
    execute_flow_step,
    interpolate_variables,
    intercept_flow,
    matches_trigger,
    start_state,
    validate_input,
)


def node(node_id, node_type, **config):
    return {"id": node_id, "type": node_type, "data": {"config": config}}


def edge(source, target, handle=None):
    item = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle:
        item["sourceHandle"] = handle
    return item


def order_flow(**overrides):
    values = dict(
        id=uuid.uuid4(),
        name="Захиалга",
        status="active",
        trigger_type="keyword",
        trigger_config={"keywords": ["захиалга"]},
        nodes=[
            node("t", "trigger"),
            node("phone", "ask_question", question_text="Утасны дугаараа бичнэ үү", validation="phone", variable_name="phone"),
            node(
                "size",
                "button_choice",
                question_text="Размер сонгоно уу",
                variable_name="size",
                buttons=[{"label": "Жижиг", "value": "S"}, {"label": "Том", "value": "L"}],
            ),
            node("small", "send_message", text="Жижиг размер, {{phone}} руу залгана"),
            node("large", "send_message", text="Том размер, {{phone}} руу залгана"),
            node("done", "end", message="Баярлалаа!"),
        ],
        edges=[
            edge("t", "phone"),
            edge("phone", "size"),
            edge("size", "small", "button_0"),
            edge("size", "large", "button_1"),
            edge("small", "done"),
            edge("large", "done"),
        ],
        priority=0,
        times_triggered=0,
        times_completed=0,
    )
    values.update(overrides)
    return Flow(**values)


class TestTriggers:
    def test_keyword_any(self):
        flow = order_flow()
        assert matches_trigger(flow, "захиалгаа шалгах", FlowContext()) is True
        assert matches_trigger(flow, "сайн уу", FlowContext()) is False

    def test_keyword_all(self):
        flow = order_flow(trigger_config={"keywords": ["хүргэлт", "үнэ"], "match_mode": "all"})
        assert matches_trigger(flow, "хүргэлтийн үнэ хэд вэ", FlowContext()) is True
        assert matches_trigger(flow, "хүргэлт байгаа юу", FlowContext()) is False

    def test_new_conversation_steps_aside_for_questions(self):
        flow = order_flow(trigger_type="new_conversation", trigger_config={})
        assert matches_trigger(flow, "сайн уу", FlowContext(is_new_conversation=True, classified_intent="greeting"))
        assert not matches_trigger(
            flow, "үнэ хэд вэ", FlowContext(is_new_conversation=True, classified_intent="product_search")
        )
        assert not matches_trigger(flow, "сайн уу", FlowContext(is_new_conversation=False))

    def test_button_click(self):
        flow = order_flow(trigger_type="button_click", trigger_config={"payload": "CHECK_ORDER"})
        assert matches_trigger(flow, "", FlowContext(quick_reply_payload="CHECK_ORDER"))
        assert not matches_trigger(flow, "", FlowContext(quick_reply_payload="SHIPPING_INFO"))

    def test_intent_match(self):
        flow = order_flow(trigger_type="intent_match", trigger_config={"intents": ["shipping"]})
        assert matches_trigger(flow, "", FlowContext(classified_intent="shipping"))
        assert not matches_trigger(flow, "", FlowContext(classified_intent=None))


class TestHelpers:
    def test_interpolate_keeps_unknown_variables(self):
        assert interpolate_variables("{{name}} / {{missing}}", {"name": "Болд"}) == "Болд / {{missing}}"

    @pytest.mark.parametrize(
        "value,rule,expected",
        [
            ("99001122", "phone", True),
            ("утас", "phone", False),
            ("a@b.mn", "email", True),
            ("a@b", "email", False),
            ("12,5", "number", True),
            ("арав", "number", False),
            ("маргааш", "date", True),
            ("2024-02-15", "date", True),
            ("хэзээ нэгэн", "date", False),
            ("  ", "text", False),
            ("юу ч", None, True),
        ],
    )
    def test_validate_input(self, value, rule, expected):
        assert validate_input(value, rule) is expected


class TestExecuteFlowStep:
    def test_first_step_asks_question(self):
        flow = order_flow()
        step = execute_flow_step(flow, start_state(flow), "захиалга")

        assert [m.text for m in step.messages] == ["Утасны дугаараа бичнэ үү"]
        assert step.new_state["current_node_id"] == "phone"
        assert step.new_state["waiting_for_input"] is True
        assert step.completed is False

    def test_invalid_answer_reprompts(self):
        flow = order_flow()
        state = execute_flow_step(flow, start_state(flow), "захиалга").new_state

        step = execute_flow_step(flow, state, "мэдэхгүй")

        assert step.messages[0].text.startswith("Зөв утасны дугаар")
        assert step.new_state["current_node_id"] == "phone"
        assert step.new_state["variables"] == {}

    def test_answer_then_buttons(self):
        flow = order_flow()
        state = execute_flow_step(flow, start_state(flow), "захиалга").new_state

        step = execute_flow_step(flow, state, "99001122")

        assert step.new_state["variables"] == {"phone": "99001122"}
        assert step.messages[0].text == "Размер сонгоно уу"
        assert [(q.title, q.payload) for q in step.messages[0].quick_replies] == [
            ("Жижиг", "flow_btn_0_S"),
            ("Том", "flow_btn_1_L"),
        ]

    def test_buttons_without_question_get_default_prompt(self):
        flow = order_flow(
            nodes=[
                node("t", "trigger"),
                node("pick", "button_choice", buttons=[{"label": "Тийм", "value": "yes"}, {"label": "Үгүй", "value": "no"}]),
            ],
            edges=[edge("t", "pick")],
        )

        step = execute_flow_step(flow, start_state(flow), "захиалга")

        assert step.messages[0].text == CHOICE_PROMPT
        assert len(step.messages[0].quick_replies) == 2

    def _at_buttons(self, flow):
        state = execute_flow_step(flow, start_state(flow), "захиалга").new_state
        return execute_flow_step(flow, state, "99001122").new_state

    def test_button_payload_follows_branch(self):
        flow = order_flow()
        step = execute_flow_step(flow, self._at_buttons(flow), "Том", quick_reply_payload="flow_btn_1_L")

        assert [m.text for m in step.messages] == ["Том размер, 99001122 руу залгана", "Баярлалаа!"]
        assert step.completed is True
        assert step.new_state is None

    @pytest.mark.parametrize("answer", ["1", "жижиг", "S"])
    def test_typed_button_answers(self, answer):
        flow = order_flow()
        step = execute_flow_step(flow, self._at_buttons(flow), answer)
        assert step.messages[0].text.startswith("Жижиг размер")

    def test_unknown_button_answer_lists_options(self):
        flow = order_flow()
        step = execute_flow_step(flow, self._at_buttons(flow), "ногоон")

        assert "1. Жижиг" in step.messages[0].text
        assert "2. Том" in step.messages[0].text
        assert step.new_state["current_node_id"] == "size"
        assert len(step.messages[0].quick_replies) == 2

    def test_condition_routing(self):
        flow = order_flow(
            nodes=[
                node("q", "ask_question", question_text="Хэдэн ширхэг?", validation="number", variable_name="qty"),
                node(
                    "c",
                    "condition",
                    conditions=[{"variable": "qty", "operator": "greater_than", "value": "10"}],
                ),
                node("bulk", "end", message="Бөөний үнээр"),
                node("retail", "end", message="Жижиглэн үнээр"),
            ],
            edges=[edge("q", "c"), edge("c", "bulk", "condition_0"), edge("c", "retail", "default")],
        )
        state = execute_flow_step(flow, start_state(flow), "").new_state

        assert execute_flow_step(flow, state, "20").messages[-1].text == "Бөөний үнээр"
        assert execute_flow_step(flow, state, "3").messages[-1].text == "Жижиглэн үнээр"

    def test_handoff(self):
        flow = order_flow(nodes=[node("h", "handoff")], edges=[])
        step = execute_flow_step(flow, start_state(flow), "")

        assert step.handoff is True
        assert step.completed is True
        assert step.messages[0].text == HANDOFF_DEFAULT_MESSAGE

    def test_cycle_is_bounded(self):
        flow = order_flow(
            nodes=[node("a", "send_message", text="a"), node("b", "send_message", text="b")],
            edges=[edge("a", "b"), edge("b", "a")],
        )
        step = execute_flow_step(flow, start_state(flow), "")

        assert len(step.messages) == MAX_NODES
        assert step.completed is False

    def test_missing_node_ends_flow(self):
        flow = order_flow()
        state = {**start_state(flow), "current_node_id": "gone", "waiting_for_input": True}
        step = execute_flow_step(flow, state, "x")

        assert step.completed is True
        assert step.new_state is None


class TestInterceptFlow:
    @pytest.fixture
    def store(self, make_store):
        return make_store()

    @pytest.fixture
    def conversation(self, runner, store):
        customer, _ = runner.run_sync(create_customer, store.id, "messenger", "user-1", "Болд")
        conversation, _ = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")
        return conversation

    @pytest.fixture
    def add_flow(self, session_factory, store):
        def _add(**overrides):
            flow = order_flow(store_id=store.id, **overrides)
            session = session_factory()
            try:
                session.add(flow)
                session.commit()
                return flow.id
            finally:
                session.close()

        return _add

    def _intercept(self, runner, conversation, text, **context):
        return runner.run_sync(intercept_flow, conversation.id, conversation.store_id, text, FlowContext(**context))

    def test_no_flows_returns_none(self, runner, conversation):
        assert self._intercept(runner, conversation, "захиалга") is None

    def test_draft_flows_are_ignored(self, runner, conversation, add_flow):
        add_flow(status="draft")
        assert self._intercept(runner, conversation, "захиалга") is None

    def test_full_run(self, runner, conversation, add_flow, db):
        flow_id = add_flow()

        first = self._intercept(runner, conversation, "захиалга өгье")
        assert first.response == "Утасны дугаараа бичнэ үү"
        assert first.flow_id == str(flow_id)

        second = self._intercept(runner, conversation, "99001122")
        assert second.response == "Размер сонгоно уу"
        assert len(second.quick_replies) == 2

        third = self._intercept(runner, conversation, "Жижиг", quick_reply_payload="flow_btn_0_S")
        assert third.completed is True
        assert third.response == "Жижиг размер, 99001122 руу залгана\n\nБаярлалаа!"

        flow = db.query(Flow).filter(Flow.id == flow_id).one()
        assert flow.times_triggered == 1
        assert flow.times_completed == 1
        assert db.query(Conversation).filter(Conversation.id == conversation.id).one().flow_state is None

    def test_priority_order(self, runner, conversation, add_flow):
        add_flow(name="late", priority=5, nodes=[node("e", "end", message="second")], edges=[])
        add_flow(name="early", priority=1, nodes=[node("e", "end", message="first")], edges=[])

        assert self._intercept(runner, conversation, "захиалга").response == "first"

    def test_handoff_escalates(self, runner, conversation, add_flow, db):
        add_flow(nodes=[node("h", "handoff", message="Оператор руу шилжүүллээ")], edges=[])

        result = self._intercept(runner, conversation, "захиалга")

        assert result.response == "Оператор руу шилжүүллээ"
        row = db.query(Conversation).filter(Conversation.id == conversation.id).one()
        assert row.status == "escalated"
        assert row.escalated_at is not None

    def test_archived_flow_clears_state(self, runner, conversation, add_flow, session_factory, db):
        flow_id = add_flow()
        self._intercept(runner, conversation, "захиалга")

        session = session_factory()
        session.query(Flow).filter(Flow.id == flow_id).update({"status": "archived"})
        session.commit()
        session.close()

        assert self._intercept(runner, conversation, "99001122") is None
        assert db.query(Conversation).filter(Conversation.id == conversation.id).one().flow_state is None
