from optimat.replay.reconstructor import ReplayBuild, build_replay, build_states, states_to_json
from optimat.replay.service import ReplayService

__all__ = ["ReplayBuild", "ReplayService", "build_replay", "build_states", "states_to_json"]
