"""Unit tests for lifecycle events."""

from pydantic import TypeAdapter

from src.datasources.events import (
    CacheHitEvent,
    DataSourceEvent,
    ErrorEvent,
    EventEmitter,
    RequestStartEvent,
)


class TestEventEmitter:
    """Tests for EventEmitter."""

    def test_handlers_called_in_order(self) -> None:
        """Test that handlers receive events in registration order."""
        emitter = EventEmitter()
        seen: list[str] = []
        emitter.on_event(lambda e: seen.append(f"a:{e.type}"))
        emitter.on_event(lambda e: seen.append(f"b:{e.type}"))

        emitter.emit(RequestStartEvent(source_id="vin"))

        assert seen == ["a:request_start", "b:request_start"]

    def test_raising_handler_isolated(self) -> None:
        """Test that a failing handler does not stop the others."""
        emitter = EventEmitter()
        seen: list[object] = []

        def broken(_event: object) -> None:
            raise ValueError("bad handler")

        emitter.on_event(broken)
        emitter.on_event(seen.append)

        emitter.emit(CacheHitEvent(source_id="vin", key="vin:abc", hit_count=1))

        assert len(seen) == 1

    def test_unsubscribe_and_clear(self) -> None:
        """Test handler removal."""
        emitter = EventEmitter()
        unsubscribe = emitter.on_event(lambda e: None)
        emitter.on_event(lambda e: None)

        unsubscribe()
        unsubscribe()
        assert emitter.handler_count == 1

        emitter.clear()
        assert emitter.handler_count == 0


class TestEventModels:
    """Tests for the event union."""

    def test_discriminated_by_type(self) -> None:
        """Test that serialized events load back into the right model."""
        adapter = TypeAdapter(DataSourceEvent)
        event = ErrorEvent(
            source_id="vin",
            code="HTTP_5XX",
            message="HTTP 503",
            retryable=True,
        )

        loaded = adapter.validate_python(event.model_dump())

        assert isinstance(loaded, ErrorEvent)
        assert loaded.timestamp.tzinfo is not None
