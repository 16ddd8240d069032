import asyncio

import pytest

from annotator.history import AnnotationStore
from annotator.interaction import InteractionController, Mode, Tool
from annotator.normalizer import BoxSize
from annotator.sync import SyncAdapter
from backend.app.models import AnnotationType

from conftest import FakeAnnotationApi, build_record

BOX = BoxSize(1000, 500)


def _controller(records=(), **kwargs):
    api = FakeAnnotationApi(records)
    store = AnnotationStore(records)
    sync = SyncAdapter(store, api)
    controller = InteractionController(store, sync, box=BOX, **kwargs)
    return controller, store, api


class TestDrawing:
    def test_tiny_drag_creates_nothing(self):
        controller, store, api = _controller()
        controller.set_tool(Tool.rectangle)

        controller.pointer_down(100, 100)
        controller.pointer_move(102, 101)
        assert controller.pointer_up(102, 101) is None

        assert store.annotations == ()
        assert api.calls == []
        assert controller.mode == Mode.idle

    def test_drawn_rectangle_is_saved(self):
        controller, store, api = _controller()
        controller.set_tool(Tool.rectangle)
        controller.on_time_update(7.5)

        async def scenario():
            controller.pointer_down(100, 100)
            controller.pointer_move(250, 200)
            assert controller.frame().draft is not None
            assert store.annotations == ()
            await controller.pointer_up(400, 300)

        asyncio.run(scenario())

        (record,) = store.annotations
        assert record.id == "srv1"
        assert record.type == AnnotationType.rectangle
        assert record.timestamp == 7.5
        assert record.x == pytest.approx(0.1)
        assert record.y == pytest.approx(0.2)
        assert record.width == pytest.approx(0.3)
        assert record.height == pytest.approx(0.4)
        assert controller.frame().draft is None
        assert controller.tool is None

    def test_no_drawing_while_playing(self):
        controller, store, api = _controller()
        controller.set_tool(Tool.circle)
        controller.set_playing(True)
        controller.pointer_down(100, 100)
        assert controller.mode == Mode.idle

    def test_playback_cancels_draft(self):
        controller, store, api = _controller()
        controller.set_tool(Tool.line)
        controller.pointer_down(100, 100)
        controller.set_playing(True)
        assert controller.draft is None
        assert controller.pointer_up(500, 100) is None

    def test_pointer_ignored_before_box_is_measured(self):
        controller, store, api = _controller()
        controller.set_box_size(0, 0)
        controller.set_tool(Tool.rectangle)
        controller.pointer_down(100, 100)
        assert controller.mode == Mode.idle


class TestSelection:
    def test_click_selects_then_drag_moves(self):
        record = build_record("a1", x=0.1, y=0.1, width=0.2, height=0.2)
        controller, store, api = _controller([record])
        controller.on_time_update(1.0)

        async def scenario():
            controller.pointer_down(200, 100)
            assert controller.mode == Mode.selected
            assert controller.selected_id == "a1"

            controller.pointer_down(200, 100)
            assert controller.mode == Mode.dragging
            controller.pointer_move(300, 150)
            # preview moves, the store does not until release
            preview = controller.frame().annotations[0]
            assert preview.x == pytest.approx(0.2)
            assert store.get("a1").x == pytest.approx(0.1)

            await controller.pointer_up(300, 150)

        asyncio.run(scenario())

        moved = store.get("a1")
        assert moved.x == pytest.approx(0.2)
        assert moved.y == pytest.approx(0.2)
        assert moved.width == pytest.approx(0.2)
        assert controller.mode == Mode.selected
        assert [call[0] for call in api.calls] == ["update"]
        assert set(api.calls[0][2]) == {"x", "y"}

    def test_release_without_movement_sends_nothing(self):
        controller, store, api = _controller([build_record("a1")])
        controller.on_time_update(1.0)
        controller.pointer_down(200, 100)
        controller.pointer_down(200, 100)
        assert controller.pointer_up(200, 100) is None
        assert api.calls == []

    def test_click_on_empty_space_toggles_playback(self):
        toggled = []
        controller, store, api = _controller(
            [build_record("a1")], on_toggle_playback=lambda: toggled.append(True)
        )
        controller.on_time_update(1.0)
        controller.pointer_down(200, 100)
        controller.pointer_down(900, 450)
        assert controller.selected_id is None
        assert controller.mode == Mode.idle
        assert toggled == [True]

    def test_delete_selected(self):
        controller, store, api = _controller([build_record("a1")])
        controller.on_time_update(1.0)
        controller.pointer_down(200, 100)

        async def scenario():
            await controller.delete_selected()

        asyncio.run(scenario())
        assert store.annotations == ()
        assert controller.selected_id is None

    def test_update_selected(self):
        controller, store, api = _controller([build_record("a1")])
        controller.on_time_update(1.0)
        controller.pointer_down(200, 100)

        async def scenario():
            await controller.update_selected({"color": "#00FF00"})

        asyncio.run(scenario())
        assert store.get("a1").color == "#00FF00"

    def test_invalid_edit_is_rejected(self):
        controller, store, api = _controller([build_record("a1")])
        controller.on_time_update(1.0)
        controller.pointer_down(200, 100)

        async def scenario():
            return await controller.update_selected({"duration": 0})

        assert asyncio.run(scenario()) is None
        assert store.get("a1").duration == 3.0
        assert not store.can_undo
        assert len(controller.sync.warnings) == 1
        assert api.calls == []

    def test_drag_of_record_whose_create_settled_mid_drag(self):
        controller, store, api = _controller()
        controller.set_tool(Tool.rectangle)

        async def scenario():
            api.gate = asyncio.Event()
            controller.pointer_down(100, 100)
            controller.pointer_up(400, 300)
            controller.pointer_down(200, 200)
            controller.pointer_down(200, 200)
            assert controller.mode == Mode.dragging

            api.gate.set()
            await controller.sync.drain()
            assert controller.selected_id == "srv1"

            controller.pointer_move(400, 300)
            assert controller.frame().annotations[0].x == pytest.approx(0.3)
            await controller.pointer_up(400, 300)

        asyncio.run(scenario())

        assert [call[0] for call in api.calls] == ["create", "update"]
        assert api.calls[1][1] == "srv1"
        assert store.get("srv1").x == pytest.approx(0.3)
        assert store.get("srv1").y == pytest.approx(0.4)
        assert api.server["srv1"].x == pytest.approx(0.3)

    def test_select_by_id_drops_the_tool(self):
        controller, store, api = _controller([build_record("a1")])
        controller.set_tool(Tool.rectangle)

        assert controller.select("a1").id == "a1"
        assert controller.tool is None
        assert controller.mode == Mode.selected
        assert controller.frame().selected_id == "a1"

        assert controller.select("ghost") is None
        assert controller.selected_id is None
        assert controller.mode == Mode.idle

    def test_undo_clears_selection(self):
        controller, store, api = _controller()
        store.create(build_record("a1"))
        controller.on_time_update(1.0)
        controller.pointer_down(200, 100)
        assert controller.selected_id == "a1"

        controller.undo()
        assert controller.selected_id is None
        assert store.annotations == ()
        controller.redo()
        assert controller.selected_id is None
        assert store.get("a1") is not None


class TestKeyboard:
    @pytest.mark.parametrize("key", ["Delete", "Backspace"])
    def test_delete_keys_remove_the_selection(self, key):
        controller, store, api = _controller([build_record("a1")])
        controller.on_time_update(1.0)
        controller.pointer_down(200, 100)

        async def scenario():
            await controller.key_down(key)

        asyncio.run(scenario())
        assert store.annotations == ()
        assert api.calls[0][:2] == ("delete", "a1")

    def test_delete_key_without_selection_does_nothing(self):
        controller, store, api = _controller([build_record("a1")])
        assert controller.key_down("Delete") is None
        assert store.get("a1") is not None

    def test_undo_and_redo_shortcuts(self):
        controller, store, api = _controller()
        store.create(build_record("a1"))

        controller.key_down("z", ctrl=True)
        assert store.annotations == ()
        controller.key_down("Z", ctrl=True, shift=True)
        assert store.get("a1") is not None

        controller.key_down("z", ctrl=True)
        controller.key_down("y", ctrl=True)
        assert store.get("a1") is not None

        # plain letters are not shortcuts
        controller.key_down("z")
        assert store.get("a1") is not None

    def test_space_toggles_playback(self):
        toggled = []
        controller, store, api = _controller(on_toggle_playback=lambda: toggled.append(True))
        controller.key_down(" ")
        controller.key_down("Space")
        assert toggled == [True, True]

    def test_shortcuts_are_ignored_while_typing(self):
        toggled = []
        controller, store, api = _controller(
            [build_record("a1")], on_toggle_playback=lambda: toggled.append(True)
        )
        controller.set_tool(Tool.text)
        controller.pointer_down(500, 250)

        assert controller.key_down("Backspace") is None
        controller.key_down("z", ctrl=True)
        controller.key_down(" ")
        assert controller.mode == Mode.text_entry
        assert store.get("a1") is not None
        assert toggled == []


class TestTextEntry:
    def test_enter_commits(self):
        controller, store, api = _controller()
        controller.set_tool(Tool.text)

        async def scenario():
            controller.pointer_down(500, 250)
            assert controller.mode == Mode.text_entry
            controller.text_input("Look here")
            await controller.key_down("Enter")

        asyncio.run(scenario())

        (record,) = store.annotations
        assert record.type == AnnotationType.text
        assert record.text == "Look here"
        assert (record.x, record.y) == (0.5, 0.5)
        assert controller.tool is None

    def test_escape_cancels(self):
        controller, store, api = _controller()
        controller.set_tool(Tool.text)
        controller.pointer_down(500, 250)
        controller.text_input("never mind")
        assert controller.key_down("Escape") is None
        assert controller.mode == Mode.idle
        assert store.annotations == ()

    def test_blank_text_is_dropped_on_blur(self):
        controller, store, api = _controller()
        controller.set_tool(Tool.text)
        controller.pointer_down(500, 250)
        controller.text_input("   ")
        assert controller.blur() is None
        assert store.annotations == ()


class TestRendering:
    def test_renderers_get_visible_annotations(self):
        frames = []
        records = [build_record("early", timestamp=0), build_record("late", timestamp=10)]
        controller, store, api = _controller(records, renderer=frames.append)

        controller.on_time_update(11.0)
        assert frames[-1].current_time == 11.0
        assert [r.id for r in frames[-1].annotations] == ["late"]

        store.delete("late")
        assert frames[-1].annotations == ()

    def test_resize_keeps_normalized_geometry(self):
        frames = []
        controller, store, api = _controller([build_record("a1")], renderer=frames.append)
        controller.set_box_size(1920, 1080)
        assert frames[-1].box == BoxSize(1920, 1080)
        assert frames[-1].annotations[0].x == 0.1

    def test_close_stops_redraws(self):
        frames = []
        controller, store, api = _controller(renderer=frames.append)
        controller.close()
        store.create(build_record("a1"))
        assert frames == []
