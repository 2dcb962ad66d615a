"""Client-side progress mirror."""
from chaptersmith.services.progress_mirror import Phase, ProgressMirror
from chaptersmith.services.stream_orchestrator import StreamEvent


def _events():
    return [
        StreamEvent("progress", {"phase": "plan", "message": "Preparing book plan"}),
        StreamEvent("progress", {"phase": "outline", "message": "Outlining", "chapterNumber": 1}),
        StreamEvent("chapter_start", {"chapterNumber": 1, "title": "Intro", "totalSections": 2}),
        StreamEvent("section_start", {"chapterNumber": 1, "sectionIndex": 0, "title": "A"}),
        StreamEvent("chunk", {"chapterNumber": 1, "sectionIndex": 0, "content": "Hello "}),
        StreamEvent("chunk", {"chapterNumber": 1, "sectionIndex": 0, "content": "world."}),
        StreamEvent("section_complete", {"chapterNumber": 1, "sectionIndex": 0}),
    ]


def _apply(mirror, events):
    for event in events:
        mirror = mirror.apply_event(event)
    return mirror


def test_events_advance_phase_and_buffer():
    mirror = _apply(ProgressMirror().start(2), _events())

    assert mirror.phase == Phase.GENERATING_SECTIONS
    assert mirror.current_chapter == 1
    assert mirror.current_chapter_title == "Intro"
    assert mirror.total_sections == 2
    assert mirror.current_section == 0
    assert mirror.chapter_buffer == "Hello world.\n\n"


def test_progress_events_set_phase():
    mirror = ProgressMirror().start(1)
    assert mirror.phase == Phase.DEDUCTING_CREDITS

    mirror = mirror.apply_event(_events()[0])
    assert mirror.phase == Phase.PLANNING

    mirror = mirror.apply_event(_events()[1])
    assert mirror.phase == Phase.OUTLINING


def test_chapter_complete_uses_server_content():
    mirror = _apply(ProgressMirror().start(2), _events())
    mirror = mirror.apply_event(
        StreamEvent("chapter_complete", {"chapterNumber": 1, "content": "## Intro\n\nHello world.\n\n"})
    )

    assert mirror.chapter_buffer == ""
    assert mirror.current_chapter is None
    assert [c.chapter_number for c in mirror.completed_chapters] == [1]
    assert mirror.content == "## Intro\n\nHello world.\n\n"


def test_book_complete():
    mirror = ProgressMirror().start(1).apply_event(
        StreamEvent("book_complete", {"bookId": "b", "content": "x"})
    )
    assert mirror.phase == Phase.COMPLETED


def test_error_event_moves_to_error():
    mirror = _apply(ProgressMirror().start(2), _events())
    mirror = mirror.apply_event(StreamEvent("error", {"message": "boom", "chapterNumber": 1}))

    assert mirror.phase == Phase.ERROR
    assert mirror.error == "boom"
    assert mirror.current_chapter is None


def test_mirror_is_immutable():
    original = ProgressMirror().start(2)
    original.apply_event(_events()[2])

    assert original.current_chapter == 1
    assert original.current_chapter_title == ""


def test_chapter_decision_and_cancel():
    mirror = _apply(ProgressMirror().start(2), _events()).request_chapter_decision()
    assert mirror.awaiting_chapter_decision

    assert not mirror.confirm_chapter().awaiting_chapter_decision

    cancelled = mirror.cancel()
    assert cancelled.cancelled
    assert cancelled.chapter_buffer == ""
    assert not cancelled.awaiting_chapter_decision


def test_rebuild_from_status_payload():
    status = {
        "ok": True,
        "status": "generating",
        "currentChapterIndex": 1,
        "totalChapters": 3,
        "completedChapters": 1,
        "chapters": [
            {"chapterNumber": 1, "title": "Intro", "status": "completed", "content": "## Intro\n\n"},
            {"chapterNumber": 2, "title": "Core", "status": "generating"},
            {"chapterNumber": 3, "title": "Advanced", "status": "pending"},
        ],
    }

    mirror = ProgressMirror.from_status(status)

    assert mirror.phase == Phase.GENERATING_SECTIONS
    assert mirror.total_chapters == 3
    assert mirror.current_chapter == 2
    assert mirror.content == "## Intro\n\n"


def test_rebuild_failed_book():
    mirror = ProgressMirror.from_status(
        {
            "status": "failed",
            "error": "section stage failed",
            "currentChapterIndex": 0,
            "totalChapters": 1,
            "completedChapters": 0,
            "chapters": [],
        }
    )
    assert mirror.phase == Phase.ERROR
    assert mirror.error == "section stage failed"
