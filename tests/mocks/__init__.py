"""Mock components for testing"""

from .clock import FakeClock
from .http import FakeResponse, ScriptedPool
from .storage import MockProvider

__all__ = ["FakeClock", "FakeResponse", "MockProvider", "ScriptedPool"]
