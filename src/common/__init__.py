from common import llm
from common.cancellation import CancellationToken, TurnCancelled
from common.ids import generate_id

__all__ = ["llm", "CancellationToken", "TurnCancelled", "generate_id"]
