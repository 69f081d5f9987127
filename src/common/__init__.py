from common import llm
from common.jsonio import atomic_write_json, canonical_dumps, load_json

__all__ = ["llm", "load_json", "atomic_write_json", "canonical_dumps"]
