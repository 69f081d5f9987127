import json
import sqlite3
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from common.jsonio import canonical_dumps
from optimat.errors import PersistenceError
from optimat.models import (
    ChatExample,
    Conversation,
    Message,
    Provider,
    ReplayConfig,
    ReplayState,
    Role,
    ToolCallRecord,
    ToolName,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

TOOL_CALL_TABLES: dict[ToolName, str] = {
    ToolName.FIND_PROVIDERS: "find_providers_calls",
    ToolName.SEARCH_ADDRESSES: "search_addresses_calls",
    ToolName.GET_PROVIDER_INFO: "get_provider_info_calls",
    ToolName.GENERAL_QUESTION: "general_question_calls",
}

_TOOL_TABLE_TEMPLATE = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    input TEXT NOT NULL DEFAULT '{{}}',
    output TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_{table}_conversation ON {table}(conversation_id, created_at);
"""

SCHEMA = (
    """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);

CREATE TABLE IF NOT EXISTS providers (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_states (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    sequence_number INTEGER NOT NULL,
    message_id TEXT NOT NULL,
    show_providers INTEGER NOT NULL DEFAULT 0,
    show_addresses INTEGER NOT NULL DEFAULT 0,
    map_action TEXT,
    state TEXT NOT NULL,
    UNIQUE (conversation_id, sequence_number)
);

CREATE TABLE IF NOT EXISTS chat_examples (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    category TEXT NOT NULL DEFAULT 'general',
    is_active INTEGER NOT NULL DEFAULT 1,
    replay_config TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chat_examples_created ON chat_examples(created_at);

CREATE TABLE IF NOT EXISTS example_states (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    example_id TEXT NOT NULL REFERENCES chat_examples(id) ON DELETE CASCADE,
    sequence_number INTEGER NOT NULL,
    message_id TEXT NOT NULL,
    show_providers INTEGER NOT NULL DEFAULT 0,
    show_addresses INTEGER NOT NULL DEFAULT 0,
    map_action TEXT,
    state TEXT NOT NULL,
    UNIQUE (example_id, sequence_number)
);
"""
    + "".join(_TOOL_TABLE_TEMPLATE.format(table=table) for table in TOOL_CALL_TABLES.values())
)

_LAST_TIMESTAMP_SQL = "SELECT MAX(ts) FROM ({})".format(
    " UNION ALL ".join(
        f"SELECT MAX(created_at) AS ts FROM {table} WHERE conversation_id = ?"
        for table in ("messages", *TOOL_CALL_TABLES.values())
    )
)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _loads(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


class Storage:
    def __init__(self, db_path: str | Path = "data/optimat.db"):
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")

            cursor = self._conn.cursor()
            cursor.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            if not cursor.fetchone():
                cursor.executescript(SCHEMA)
                cursor.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
                self._conn.commit()
                logger.info(f"Database initialized with schema version {SCHEMA_VERSION}")
            else:
                cursor.execute("SELECT version FROM schema_version")
                row = cursor.fetchone()
                if row and row[0] < SCHEMA_VERSION:
                    # Every statement in SCHEMA is idempotent, so re-running it adds new tables.
                    cursor.executescript(SCHEMA)
                    cursor.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
                    self._conn.commit()
                    logger.info(f"Database upgraded from schema version {row[0]} to {SCHEMA_VERSION}")
                elif row and row[0] != SCHEMA_VERSION:
                    logger.warning(
                        f"Schema version mismatch: expected {SCHEMA_VERSION}, got {row[0]}"
                    )
        except sqlite3.Error as e:
            logger.error(f"Failed to open database {self.db_path}: {e}")
            raise PersistenceError(f"Failed to open database: {e}") from e

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceError("Database connection not initialized")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        try:
            with self._lock:
                cursor = self.conn.cursor()
                cursor.execute(sql, params)
                return cursor.fetchone()
        except sqlite3.Error as e:
            logger.error(f"Query failed: {e}")
            raise PersistenceError(f"Query failed: {e}") from e

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self._lock:
                cursor = self.conn.cursor()
                cursor.execute(sql, params)
                return cursor.fetchall()
        except sqlite3.Error as e:
            logger.error(f"Query failed: {e}")
            raise PersistenceError(f"Query failed: {e}") from e

    def _next_timestamp(
        self, cursor: sqlite3.Cursor, conversation_id: str, requested: datetime | None
    ) -> datetime:
        # Clamp so a conversation's timeline never goes backwards.
        candidate = requested or utc_now()
        if candidate.tzinfo is None:
            candidate = candidate.replace(tzinfo=timezone.utc)
        cursor.execute(_LAST_TIMESTAMP_SQL, (conversation_id,) * (1 + len(TOOL_CALL_TABLES)))
        row = cursor.fetchone()
        if row and row[0]:
            last = datetime.fromisoformat(row[0])
            if last > candidate:
                return last
        return candidate

    # conversations

    def create_conversation(
        self, conversation_id: str | None = None, title: str | None = None
    ) -> Conversation:
        if conversation_id:
            conversation = Conversation(id=conversation_id, title=title)
        else:
            conversation = Conversation(title=title)
        try:
            with self._lock:
                self.conn.execute(
                    "INSERT INTO conversations (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (
                        conversation.id,
                        conversation.title,
                        _ts(conversation.created_at),
                        _ts(conversation.updated_at),
                    ),
                )
                self.conn.commit()
            logger.debug(f"Created conversation {conversation.id}")
            return conversation
        except sqlite3.Error as e:
            logger.error(f"Failed to create conversation {conversation.id}: {e}")
            raise PersistenceError(f"Failed to create conversation: {e}") from e

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = self._fetchone("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        return self._row_to_conversation(row) if row else None

    def ensure_conversation(self, conversation_id: str) -> Conversation:
        existing = self.get_conversation(conversation_id)
        if existing:
            return existing
        return self.create_conversation(conversation_id)

    def touch_conversation(self, conversation_id: str, title: str | None = None) -> None:
        try:
            with self._lock:
                if title is None:
                    self.conn.execute(
                        "UPDATE conversations SET updated_at = ? WHERE id = ?",
                        (_ts(utc_now()), conversation_id),
                    )
                else:
                    self.conn.execute(
                        "UPDATE conversations SET updated_at = ?, title = ? WHERE id = ?",
                        (_ts(utc_now()), title, conversation_id),
                    )
                self.conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to update conversation {conversation_id}: {e}")
            raise PersistenceError(f"Failed to update conversation: {e}") from e

    def delete_conversation(self, conversation_id: str) -> bool:
        try:
            with self._lock:
                cursor = self.conn.execute(
                    "DELETE FROM conversations WHERE id = ?", (conversation_id,)
                )
                self.conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to delete conversation {conversation_id}: {e}")
            raise PersistenceError(f"Failed to delete conversation: {e}") from e

    # messages

    def add_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        created_at: datetime | None = None,
    ) -> Message:
        try:
            with self._lock:
                cursor = self.conn.cursor()
                timestamp = self._next_timestamp(cursor, conversation_id, created_at)
                message = Message(
                    conversation_id=conversation_id,
                    role=role,
                    content=content,
                    created_at=timestamp,
                )
                cursor.execute(
                    "INSERT INTO messages (id, conversation_id, role, content, created_at) VALUES (?, ?, ?, ?, ?)",
                    (message.id, conversation_id, role, content, _ts(message.created_at)),
                )
                self.conn.commit()
            logger.debug(f"Saved {role} message {message.id} in {conversation_id}")
            return message
        except sqlite3.Error as e:
            logger.error(f"Failed to save message in {conversation_id}: {e}")
            raise PersistenceError(f"Failed to save message: {e}") from e

    def list_messages(self, conversation_id: str) -> list[Message]:
        rows = self._fetchall(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at, rowid",
            (conversation_id,),
        )
        return [self._row_to_message(row) for row in rows]

    # tool calls

    def save_tool_call(
        self,
        conversation_id: str,
        tool_name: ToolName,
        input: dict,
        output: Any,
        created_at: datetime | None = None,
    ) -> ToolCallRecord:
        table = TOOL_CALL_TABLES[ToolName(tool_name)]
        try:
            with self._lock:
                cursor = self.conn.cursor()
                timestamp = self._next_timestamp(cursor, conversation_id, created_at)
                record = ToolCallRecord(
                    conversation_id=conversation_id,
                    tool_name=tool_name,
                    input=input,
                    output=output,
                    created_at=timestamp,
                )
                cursor.execute(
                    f"INSERT INTO {table} (id, conversation_id, input, output, created_at) VALUES (?, ?, ?, ?, ?)",
                    (
                        record.id,
                        conversation_id,
                        canonical_dumps(input),
                        canonical_dumps(output),
                        _ts(record.created_at),
                    ),
                )
                self.conn.commit()
            logger.debug(f"Saved {record.tool_name.value} call {record.id} in {conversation_id}")
            return record
        except sqlite3.Error as e:
            logger.error(f"Failed to save {tool_name} call in {conversation_id}: {e}")
            raise PersistenceError(f"Failed to save tool call: {e}") from e

    def list_tool_calls(self, conversation_id: str) -> dict[str, list[dict]]:
        """Raw rows per tool name; undecodable payloads are returned as strings."""
        calls: dict[str, list[dict]] = {}
        for tool_name, table in TOOL_CALL_TABLES.items():
            rows = self._fetchall(
                f"SELECT * FROM {table} WHERE conversation_id = ? ORDER BY created_at, id",
                (conversation_id,),
            )
            calls[tool_name.value] = [
                {
                    "id": row["id"],
                    "conversation_id": row["conversation_id"],
                    "input": _loads(row["input"]),
                    "output": _loads(row["output"]),
                    "created_at": row["created_at"],
                }
                for row in rows
            ]
        return calls

    def count_tool_calls(self, conversation_id: str) -> int:
        return sum(len(rows) for rows in self.list_tool_calls(conversation_id).values())

    # providers

    def upsert_provider(self, provider: Provider) -> None:
        try:
            with self._lock:
                self.conn.execute(
                    "INSERT OR REPLACE INTO providers (id, name, data) VALUES (?, ?, ?)",
                    (provider.id, provider.name, canonical_dumps(provider.model_dump(mode="json"))),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to save provider {provider.id}: {e}")
            raise PersistenceError(f"Failed to save provider: {e}") from e

    def list_providers(self) -> list[Provider]:
        rows = self._fetchall("SELECT * FROM providers ORDER BY id")
        return [p for p in (self._row_to_provider(row) for row in rows) if p is not None]

    def find_providers_by_name(self, name: str, limit: int = 5) -> list[Provider]:
        escaped = name.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._fetchall(
            "SELECT * FROM providers WHERE name LIKE ? ESCAPE '\\' ORDER BY id LIMIT ?",
            (f"%{escaped}%", limit),
        )
        return [p for p in (self._row_to_provider(row) for row in rows) if p is not None]

    # replay states

    def _replace_states(
        self, table: str, key_column: str, key: str, states: list[ReplayState]
    ) -> int:
        try:
            with self._lock:
                try:
                    self.conn.execute(f"DELETE FROM {table} WHERE {key_column} = ?", (key,))
                    self.conn.executemany(
                        f"""
                        INSERT INTO {table}
                        ({key_column}, sequence_number, message_id, show_providers,
                         show_addresses, map_action, state)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                key,
                                state.sequence_number,
                                state.message.id,
                                int(state.ui_hints.show_providers),
                                int(state.ui_hints.show_addresses),
                                state.ui_hints.map_action,
                                canonical_dumps(state.model_dump(mode="json")),
                            )
                            for state in states
                        ],
                    )
                    self.conn.commit()
                except sqlite3.Error:
                    self.conn.rollback()
                    raise
            logger.debug(f"Stored {len(states)} replay states in {table} for {key}")
            return len(states)
        except sqlite3.Error as e:
            logger.error(f"Failed to store replay states for {key}: {e}")
            raise PersistenceError(f"Failed to store replay states: {e}") from e

    def _read_states(self, table: str, key_column: str, key: str) -> list[ReplayState]:
        rows = self._fetchall(
            f"SELECT state FROM {table} WHERE {key_column} = ? ORDER BY sequence_number",
            (key,),
        )
        return [ReplayState.model_validate_json(row["state"]) for row in rows]

    def replace_replay_states(self, conversation_id: str, states: list[ReplayState]) -> int:
        return self._replace_states("conversation_states", "conversation_id", conversation_id, states)

    def get_replay_states(self, conversation_id: str) -> list[ReplayState]:
        return self._read_states("conversation_states", "conversation_id", conversation_id)

    # chat examples

    def create_example(self, example: ChatExample) -> ChatExample:
        try:
            with self._lock:
                self.conn.execute(
                    """
                    INSERT INTO chat_examples
                    (id, conversation_id, title, description, tags, category, is_active,
                     replay_config, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        example.id,
                        example.conversation_id,
                        example.title,
                        example.description,
                        canonical_dumps(example.tags),
                        example.category,
                        int(example.is_active),
                        canonical_dumps(example.replay_config.model_dump(mode="json")),
                        _ts(example.created_at),
                        _ts(example.updated_at),
                    ),
                )
                self.conn.commit()
            logger.debug(f"Created chat example {example.id} from {example.conversation_id}")
            return example
        except sqlite3.Error as e:
            logger.error(f"Failed to create chat example {example.id}: {e}")
            raise PersistenceError(f"Failed to create chat example: {e}") from e

    def get_example(self, example_id: str) -> ChatExample | None:
        row = self._fetchone("SELECT * FROM chat_examples WHERE id = ?", (example_id,))
        return self._row_to_example(row) if row else None

    def list_examples(
        self, is_active: bool | None = None, limit: int = 50, offset: int = 0
    ) -> list[ChatExample]:
        if is_active is None:
            rows = self._fetchall(
                "SELECT * FROM chat_examples ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
                (limit, offset),
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM chat_examples WHERE is_active = ? "
                "ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
                (int(is_active), limit, offset),
            )
        return [self._row_to_example(row) for row in rows]

    def set_example_active(self, example_id: str, is_active: bool) -> bool:
        try:
            with self._lock:
                cursor = self.conn.execute(
                    "UPDATE chat_examples SET is_active = ?, updated_at = ? WHERE id = ?",
                    (int(is_active), _ts(utc_now()), example_id),
                )
                self.conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to update chat example {example_id}: {e}")
            raise PersistenceError(f"Failed to update chat example: {e}") from e

    def delete_example(self, example_id: str) -> bool:
        try:
            with self._lock:
                cursor = self.conn.execute("DELETE FROM chat_examples WHERE id = ?", (example_id,))
                self.conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to delete chat example {example_id}: {e}")
            raise PersistenceError(f"Failed to delete chat example: {e}") from e

    def replace_example_states(self, example_id: str, states: list[ReplayState]) -> int:
        return self._replace_states("example_states", "example_id", example_id, states)

    def get_example_states(self, example_id: str) -> list[ReplayState]:
        return self._read_states("example_states", "example_id", example_id)

    def _row_to_conversation(self, row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_provider(self, row: sqlite3.Row) -> Provider | None:
        try:
            return Provider.model_validate_json(row["data"])
        except ValidationError as e:
            logger.warning(f"Skipping malformed provider {row['id']}: {e}")
            return None

    def _row_to_example(self, row: sqlite3.Row) -> ChatExample:
        return ChatExample(
            id=row["id"],
            conversation_id=row["conversation_id"],
            title=row["title"],
            description=row["description"],
            tags=_loads(row["tags"]) or [],
            category=row["category"],
            is_active=bool(row["is_active"]),
            replay_config=ReplayConfig.model_validate(_loads(row["replay_config"]) or {}),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
