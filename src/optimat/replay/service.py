import logging

from optimat.errors import ConversationNotFound, ExampleNotFound
from optimat.models import ChatExample, ConversationReplay, ReplayConfig, ReplayState
from optimat.replay.reconstructor import ReplayBuild, build_replay
from optimat.storage import Storage

logger = logging.getLogger(__name__)


class ReplayService:
    def __init__(self, storage: Storage, replay_config: ReplayConfig | None = None):
        self.storage = storage
        self.replay_config = replay_config or ReplayConfig()

    def build(self, conversation_id: str) -> ReplayBuild:
        if self.storage.get_conversation(conversation_id) is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        messages = self.storage.list_messages(conversation_id)
        tool_calls = self.storage.list_tool_calls(conversation_id)
        return build_replay(messages, tool_calls)

    def regenerate(self, conversation_id: str) -> list[ReplayState]:
        build = self.build(conversation_id)
        count = self.storage.replace_replay_states(conversation_id, build.states)
        logger.info(
            f"Regenerated {count} replay states for {conversation_id}"
            f" ({len(build.warnings)} warnings)"
        )
        return build.states

    def get_replay(self, conversation_id: str) -> ConversationReplay:
        conversation = self.storage.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        build = build_replay(
            self.storage.list_messages(conversation_id),
            self.storage.list_tool_calls(conversation_id),
        )
        return ConversationReplay(
            conversation_id=conversation.id,
            title=conversation.title,
            created_at=conversation.created_at,
            replay_config=self.replay_config,
            states=build.states,
            warnings=build.warnings,
        )

    def save_as_example(
        self,
        conversation_id: str,
        title: str,
        description: str | None = None,
        tags: list[str] | None = None,
        category: str = "general",
        replay_config: ReplayConfig | None = None,
    ) -> tuple[ChatExample, list[ReplayState]]:
        """Freeze the conversation's current replay under a new chat example."""
        if not title or not title.strip():
            raise ValueError("title is required")
        build = self.build(conversation_id)
        example = ChatExample(
            conversation_id=conversation_id,
            title=title.strip(),
            description=description,
            tags=list(tags or []),
            category=category or "general",
            replay_config=replay_config or self.replay_config,
        )
        self.storage.create_example(example)
        self.storage.replace_example_states(example.id, build.states)
        logger.info(
            f"Saved {conversation_id} as example {example.id} with {len(build.states)} states"
        )
        return example, build.states

    def _example(self, example_id: str) -> ChatExample:
        example = self.storage.get_example(example_id)
        if example is None:
            raise ExampleNotFound(f"Chat example {example_id} not found")
        return example

    def regenerate_example(self, example_id: str) -> list[ReplayState]:
        example = self._example(example_id)
        build = self.build(example.conversation_id)
        count = self.storage.replace_example_states(example_id, build.states)
        logger.info(
            f"Regenerated {count} replay states for example {example_id}"
            f" ({len(build.warnings)} warnings)"
        )
        return build.states

    def get_example_replay(self, example_id: str) -> ConversationReplay:
        example = self._example(example_id)
        return ConversationReplay(
            conversation_id=example.conversation_id,
            title=example.title,
            description=example.description,
            example_id=example.id,
            created_at=example.created_at,
            replay_config=example.replay_config,
            states=self.storage.get_example_states(example_id),
        )
