from slm_manager.log_buffer import LogBuffer, LogEntry


def test_trims_oldest_block_when_over_capacity():
    buffer = LogBuffer(max_entries=5, trim_count=2)
    for i in range(6):
        buffer.append(f"line {i}")

    assert [entry.message for entry in buffer.snapshot()] == ["line 2", "line 3", "line 4", "line 5"]

    for i in range(6, 8):
        buffer.append(f"line {i}")
    assert len(buffer) == 4
    assert buffer.snapshot()[0].message == "line 4"


def test_default_capacity():
    buffer = LogBuffer()
    for i in range(501):
        buffer.append(str(i))
    messages = [entry.message for entry in buffer.snapshot()]
    assert len(messages) == 401
    assert messages[0] == "100"
    assert messages[-1] == "500"


def test_snapshot_filters_on_bracketed_tag():
    buffer = LogBuffer()
    buffer.append("Starting Summarizer: mlx-community/Qwen2.5-7B-Instruct-4bit")
    buffer.append("[Summarizer] loading")
    buffer.append("[Reasoner] loading")

    tagged = buffer.snapshot(tag="Summarizer")
    assert [entry.message for entry in tagged] == ["[Summarizer] loading"]
    assert len(buffer.snapshot()) == 3


def test_snapshot_is_immutable_copy():
    buffer = LogBuffer()
    buffer.append("one")
    snap = buffer.snapshot()
    buffer.append("two")
    assert len(snap) == 1
    assert isinstance(snap, tuple)


def test_entry_formatting_and_callback():
    seen = []
    buffer = LogBuffer(on_append=seen.append)
    entry = buffer.append("hello")

    assert isinstance(entry, LogEntry)
    assert str(entry) == f"[{entry.timestamp}] hello"
    assert entry.timestamp.endswith("Z")
    assert entry.to_dict()["line"] == str(entry)
    assert seen == [entry]
    assert buffer.lines() == [str(entry)]


def test_clear():
    buffer = LogBuffer()
    buffer.append("x")
    buffer.clear()
    assert len(buffer) == 0
    assert buffer.snapshot() == ()
