"""Inbound Messenger/Instagram message pipeline.

For every customer text: resolve the store, upsert customer and
conversation, store the message while bumping the unread counter, kick off
tagging and notifications in the background, then pick at most one reply:
escalation first, then a scripted flow, then the AI auto-reply.
"""

import asyncio
import logging
from enum import Enum
from functools import partial
from typing import Any, Callable, Optional

from pydantic import ValidationError

from shopbot.config import settings
from shopbot.database import SessionRunner
from shopbot.logging_config import get_logger
from shopbot.schemas.outbound import MESSAGE_QUICK_REPLIES, MESSAGE_TEXT, OutboundMessage
from shopbot.schemas.webhook import (
    SUPPORTED_OBJECTS,
    FeedEntry,
    InboundText,
    MessagingEntry,
    MessagingEvent,
    UnknownEntry,
    WebhookEntry,
    WebhookPayload,
    classify_entry,
    extract_inbound_text,
)
from shopbot.services.ai_service import AIOrchestrator, HttpChatEngine, build_reply_plan
from shopbot.services.alert_service import alert_error
from shopbot.services.background import spawn_detached
from shopbot.services.conversation_service import (
    create_customer,
    find_customer,
    get_or_create_conversation,
    increment_unread,
)
from shopbot.services.dedup_service import DeliveryDeduplicator
from shopbot.services.escalation_service import EscalationDecision, process_escalation
from shopbot.services.flow_service import CHOICE_PROMPT, FlowContext, FlowResult, intercept_flow
from shopbot.services.message_service import build_inbound_metadata, save_message
from shopbot.services.messenger_service import ChannelClient
from shopbot.services.notification_service import (
    EVENT_ESCALATION,
    EVENT_NEW_CUSTOMER,
    EVENT_NEW_MESSAGE,
    NotificationDispatcher,
)
from shopbot.services.state_machine import is_human_handled
from shopbot.services.tagging_service import MessageTagger, build_default_provider
from shopbot.services.tenant_service import ResolvedTenant, resolve_tenant

logger = get_logger("pipeline")


class EventOutcome(str, Enum):
    SKIPPED = "skipped"  # not a customer text we handle
    DUPLICATE = "duplicate"
    UNKNOWN_TENANT = "unknown_tenant"
    ESCALATED = "escalated"
    HUMAN_HANDLING = "human_handling"  # stored, a human owns the reply
    NO_TOKEN = "no_token"  # stored, nothing can be sent
    FLOW = "flow"
    AUTO_REPLY_OFF = "auto_reply_off"
    AI_REPLIED = "ai_replied"
    AI_NO_RESPONSE = "ai_no_response"


class WebhookPipeline:
    def __init__(
        self,
        runner: SessionRunner,
        *,
        orchestrator: AIOrchestrator,
        notifier: NotificationDispatcher,
        tagger: Optional[MessageTagger] = None,
        deduplicator: Optional[DeliveryDeduplicator] = None,
        channel_client_factory: Callable[..., ChannelClient] = ChannelClient,
        flow_interceptor: Callable[..., Optional[FlowResult]] = intercept_flow,
        escalation_evaluator: Callable[..., EscalationDecision] = process_escalation,
        app_url: Optional[str] = None,
    ):
        self.runner = runner
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.tagger = tagger
        self.deduplicator = deduplicator or DeliveryDeduplicator(None)
        self.channel_client_factory = channel_client_factory
        self.flow_interceptor = flow_interceptor
        self.escalation_evaluator = escalation_evaluator
        self.app_url = app_url

    async def handle_payload(self, payload: WebhookPayload) -> str:
        """Process a verified webhook envelope. Returns the response status.

        Malformed entries and events are logged and skipped; the rest of the
        batch is still processed.
        """
        if payload.object not in SUPPORTED_OBJECTS:
            logger.info(f"Ignoring webhook object {payload.object!r}")
            return "ignored"

        for index, raw_entry in enumerate(payload.entry):
            try:
                entry = classify_entry(WebhookEntry.model_validate(raw_entry))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed webhook entry",
                    extra={"context": {"index": index, "errors": e.error_count()}},
                )
                continue

            if isinstance(entry, MessagingEntry):
                for event in entry.events:
                    outcome = await self.process_event(payload.object, entry.entry_id, event)
                    logger.debug(f"Event outcome: {outcome.value}", extra={"context": {"entry_id": entry.entry_id}})
            elif isinstance(entry, FeedEntry):
                # Comment auto-replies are handled by a separate service
                logger.info(
                    "Feed changes received, not handled by message pipeline",
                    extra={"context": {"entry_id": entry.entry_id, "changes": len(entry.changes)}},
                )
            elif isinstance(entry, UnknownEntry):
                logger.info("Webhook entry without messaging or changes", extra={"context": {"entry_id": entry.entry_id}})
        return "ok"

    async def process_event(self, object_type: str, entry_id: str, raw_event: Any) -> EventOutcome:
        try:
            event = MessagingEvent.model_validate(raw_event)
        except ValidationError as e:
            logger.warning(
                "Skipping malformed messaging event",
                extra={"context": {"entry_id": entry_id, "errors": e.error_count()}},
            )
            return EventOutcome.SKIPPED

        inbound = extract_inbound_text(event)
        if inbound is None:
            return EventOutcome.SKIPPED

        if await self.deduplicator.is_duplicate(entry_id, inbound.mid):
            logger.info("Duplicate delivery skipped", extra={"context": {"entry_id": entry_id, "mid": inbound.mid}})
            return EventOutcome.DUPLICATE

        try:
            return await self._process_inbound(object_type, entry_id, inbound)
        except Exception:
            await self.deduplicator.release(entry_id, inbound.mid)
            raise

    async def _process_inbound(self, object_type: str, entry_id: str, inbound: InboundText) -> EventOutcome:
        tenant = await self.runner.run(resolve_tenant, object_type, entry_id)
        if tenant is None:
            return EventOutcome.UNKNOWN_TENANT

        sender_id = inbound.sender_id
        client = None
        if tenant.can_send:
            client = self.channel_client_factory(tenant.channel, tenant.access_token, store_id=tenant.store_id)
            spawn_detached(partial(client.mark_seen, sender_id), name="mark_seen", log_level=logging.INFO)

        customer = await self._upsert_customer(tenant, sender_id, client)
        conversation, is_new = await self.runner.run(
            get_or_create_conversation, tenant.store_id, customer.id, tenant.channel
        )
        human_handled = is_human_handled(conversation.status)
        context = {
            "store_id": str(tenant.store_id),
            "conversation_id": str(conversation.id),
            "channel": tenant.channel,
        }

        saved, bumped = await asyncio.gather(
            self.runner.run(
                save_message,
                conversation.id,
                inbound.text,
                is_from_customer=True,
                metadata=build_inbound_metadata(inbound.quick_reply_payload, inbound.mid),
            ),
            self.runner.run(increment_unread, conversation.id),
            return_exceptions=True,
        )
        if isinstance(saved, BaseException):
            raise saved
        if isinstance(bumped, BaseException):
            logger.error(f"Unread counter update failed: {bumped}", extra={"context": context})
            spawn_detached(
                partial(alert_error, "Unread counter update failed", {**context, "error": str(bumped)}),
                name="alert_unread",
            )

        if self.tagger is not None:
            spawn_detached(partial(self.tagger.tag_message, saved.id, inbound.text), name="tag_message", context=context)

        self._notify(
            tenant,
            EVENT_NEW_MESSAGE,
            {
                "customer_name": customer.name,
                "customer_id": str(customer.id),
                "conversation_id": str(conversation.id),
                "message": inbound.text,
                "channel": tenant.channel,
            },
        )

        decision = await self._evaluate_escalation(tenant, conversation, saved, context)
        if decision.escalated:
            self._notify(
                tenant,
                EVENT_ESCALATION,
                {
                    "conversation_id": str(conversation.id),
                    "customer_name": customer.name,
                    "level": decision.level,
                    "signals": decision.signals,
                    "score": decision.score,
                },
            )
            if client is not None and decision.escalation_message:
                sent = await client.send_text(sender_id, decision.escalation_message)
                if sent.ok:
                    await self._store_reply(
                        conversation.id,
                        decision.escalation_message,
                        {
                            "type": "escalation",
                            "signals": decision.signals,
                            "score": decision.score,
                            "level": decision.level,
                        },
                        context,
                    )
            return EventOutcome.ESCALATED

        if human_handled:
            return EventOutcome.HUMAN_HANDLING

        if client is None:
            logger.info("No access token for store, inbound stored without reply", extra={"context": context})
            return EventOutcome.NO_TOKEN

        flow_result = await self._intercept_flow(tenant, conversation, inbound, is_new, context)
        if flow_result is not None:
            await self._send_flow_result(client, sender_id, conversation.id, flow_result, context)
            return EventOutcome.FLOW

        if not tenant.ai_auto_reply:
            return EventOutcome.AUTO_REPLY_OFF

        return await self._auto_reply(tenant, conversation, customer, inbound, client, context)

    async def _upsert_customer(self, tenant: ResolvedTenant, sender_id: str, client: Optional[ChannelClient]):
        customer = await self.runner.run(find_customer, tenant.store_id, tenant.channel, sender_id)
        if customer is not None:
            return customer

        name = await client.fetch_profile_name(sender_id) if client is not None else None
        customer, created = await self.runner.run(
            create_customer, tenant.store_id, tenant.channel, sender_id, name
        )
        if created:
            logger.info(
                "New customer",
                extra={"context": {"store_id": str(tenant.store_id), "customer_id": str(customer.id), "channel": tenant.channel}},
            )
            self._notify(
                tenant,
                EVENT_NEW_CUSTOMER,
                {"customer_id": str(customer.id), "name": customer.name, "channel": tenant.channel},
            )
        return customer

    async def _evaluate_escalation(self, tenant, conversation, saved, context: dict) -> EscalationDecision:
        try:
            return await self.runner.run(
                self.escalation_evaluator,
                conversation.id,
                saved.content,
                tenant.store_id,
                tenant.chatbot_settings,
                message_id=saved.id,
            )
        except Exception as e:
            logger.error(f"Escalation evaluation failed: {e}", extra={"context": context}, exc_info=True)
            spawn_detached(
                partial(alert_error, "Escalation evaluation failed", {**context, "error": str(e)}),
                name="alert_escalation",
            )
            return EscalationDecision(escalated=False)

    async def _intercept_flow(self, tenant, conversation, inbound: InboundText, is_new: bool, context: dict):
        flow_context = FlowContext(is_new_conversation=is_new, quick_reply_payload=inbound.quick_reply_payload)
        try:
            return await self.runner.run(
                self.flow_interceptor, conversation.id, tenant.store_id, inbound.text, flow_context
            )
        except Exception as e:
            logger.error(f"Flow interception failed, falling back to AI: {e}", extra={"context": context}, exc_info=True)
            return None

    async def _send_flow_result(self, client: ChannelClient, sender_id: str, conversation_id, result: FlowResult, context: dict):
        if result.quick_replies:
            message = OutboundMessage(
                MESSAGE_QUICK_REPLIES, text=result.response or CHOICE_PROMPT, quick_replies=result.quick_replies
            )
        elif result.response:
            message = OutboundMessage(MESSAGE_TEXT, text=result.response)
        else:
            logger.info("Flow intercepted without a message", extra={"context": {**context, "flow_id": result.flow_id}})
            return

        sent = await client.send(sender_id, message)
        if sent.ok:
            await self._store_reply(
                conversation_id,
                message.text,
                {"type": "flow", "flow_id": result.flow_id, "completed": result.completed},
                context,
            )

    async def _auto_reply(self, tenant, conversation, customer, inbound: InboundText, client: ChannelClient, context: dict):
        result = await self.orchestrator.respond(
            conversation, inbound.text, tenant, customer, tenant.chatbot_settings, client, inbound.sender_id
        )
        if result is None:
            return EventOutcome.AI_NO_RESPONSE

        plan = build_reply_plan(result, show_prices=tenant.chatbot_settings.show_prices, app_url=self.app_url)
        if not plan:
            logger.info("AI returned no response", extra={"context": {**context, "intent": result.intent}})
            return EventOutcome.AI_NO_RESPONSE

        delivered = True
        for message in plan:
            sent = await client.send(inbound.sender_id, message)
            if not sent.ok:
                delivered = False
                break

        if delivered:
            await self._store_reply(
                conversation.id,
                result.response.strip(),
                {
                    "intent": result.intent,
                    "products_found": len(result.products),
                    "order_step": result.order_step,
                },
                context,
            )
        return EventOutcome.AI_REPLIED

    async def _store_reply(self, conversation_id, content: str, metadata: dict, context: dict) -> None:
        try:
            await self.runner.run(
                save_message, conversation_id, content, is_from_customer=False, is_ai_response=True, metadata=metadata
            )
        except Exception as e:
            logger.error(f"Failed to store outbound reply: {e}", extra={"context": context})

    def _notify(self, tenant: ResolvedTenant, event: str, payload: dict) -> None:
        spawn_detached(
            partial(self.notifier.dispatch, tenant.store_id, event, payload, tenant.notification_settings),
            name=f"notify_{event}",
            context={"store_id": str(tenant.store_id)},
            log_level=logging.INFO,
        )


def build_pipeline(runner: Optional[SessionRunner] = None) -> WebhookPipeline:
    runner = runner or SessionRunner()
    engine = HttpChatEngine(settings.chat_engine_url) if settings.chat_engine_url else None
    return WebhookPipeline(
        runner,
        orchestrator=AIOrchestrator(engine),
        notifier=NotificationDispatcher(runner),
        tagger=MessageTagger(runner, build_default_provider()),
        deduplicator=DeliveryDeduplicator.from_settings(),
        app_url=settings.public_app_url,
    )
