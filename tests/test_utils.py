import json

from screendiary.models import WindowBounds
from screendiary.utils import parse_osascript_window, write_json_atomic


def test_osascript_output_with_bounds():
    window = parse_osascript_window("Safari|Docs - Python|812|10, 25|1280, 800\n")
    assert window.app_name == "Safari"
    assert window.window_title == "Docs - Python"
    assert window.process_id == 812
    assert window.bounds == WindowBounds(10, 25, 1280, 800)


def test_osascript_output_without_window():
    window = parse_osascript_window("Finder||97||")
    assert window.app_name == "Finder"
    assert window.window_title is None
    assert window.bounds is None


def test_osascript_garbage():
    assert parse_osascript_window("") is None


def test_atomic_write_replaces_content(tmp_path):
    path = tmp_path / "nested" / "state.json"
    write_json_atomic(path, {"n": 1})
    write_json_atomic(path, {"n": 2})

    assert json.loads(path.read_text(encoding="utf-8")) == {"n": 2}
    assert [p.name for p in path.parent.iterdir()] == ["state.json"]
