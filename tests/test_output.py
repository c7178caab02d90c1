import io
import threading

from treegrep import OutputSink, build_options, compose_output

WORDS = ["one", "two", "three", "four", "five", "six", "seven", "eight", "nine", "ten"]
LINES = [w + "\n" for w in WORDS]


def test_context_groups_terminal_layout():
    opts = build_options("two|seven", before=1, after=1, force_terminal=True)
    out = compose_output("./notes.txt", LINES, [2, 7], opts)
    assert out == [
        "notes.txt",
        "1- one", "2: two", "3+ three", "",
        "6- six", "7: seven", "8+ eight", "",
        "",
    ]


def test_context_clipped_at_edges():
    opts = build_options("one|ten", context=2, force_terminal=True)
    out = compose_output("f", LINES, [1, 10], opts)
    assert out == [
        "f",
        "1: one", "2+ two", "3+ three", "",
        "8- eight", "9- nine", "10: ten", "",
        "",
    ]


def test_zero_context_has_no_separators():
    opts = build_options("o", force_terminal=True)
    out = compose_output("f", LINES, [1, 2, 4], opts)
    assert out == ["f", "1: one", "2: two", "4: four", ""]


def test_piped_output_has_no_markers_or_name():
    opts = build_options("two|seven", before=1)
    out = compose_output("f", LINES, [2, 7], opts)
    assert out == ["one", "two", "", "six", "seven", "", ""]


def test_match_only_emits_each_substring():
    lines = ["foo and fooo and bar\n"]
    opts = build_options("fo+", match_only=True, force_terminal=True)
    assert compose_output("f", lines, [1], opts) == ["f", "1- foo", "1- fooo", ""]

    opts = build_options("fo+", match_only=True)
    assert compose_output("f", lines, [1], opts) == ["foo", "fooo", ""]


def test_match_only_after_context_uses_following_lines():
    lines = ["key=1\n", "key=2\n", "other\n", "key=4\n"]
    opts = build_options(r"key=\d", match_only=True, after=2, force_terminal=True)
    out = compose_output("f", lines, [1], opts)
    assert out == ["f", "1- key=1", "2- key=2", "", ""]


def test_file_name_only():
    opts = build_options("two", file_name_only=True, context=3, match_only=True, force_terminal=True)
    assert compose_output("./dir/f.txt", LINES, [2], opts) == ["dir/f.txt"]
    opts = build_options("two", file_name_only=True)
    assert compose_output("dir/f.txt", LINES, [2], opts) == ["dir/f.txt"]


def test_colorized_output():
    opts = build_options("foo", is_terminal=True)
    out = compose_output("f.txt", ["a foo b foo\n"], [1], opts)
    assert out == [
        "\x1b[96mf.txt\x1b[0m",
        "\x1b[93m1:\x1b[0m a \x1b[30;42mfoo\x1b[0m b \x1b[30;42mfoo\x1b[0m",
        "",
    ]


def test_no_color_on_terminal():
    opts = build_options("foo", is_terminal=True, no_color=True)
    assert compose_output("f.txt", ["a foo\n"], [1], opts) == ["f.txt", "1: a foo", ""]


def test_sink_keeps_file_blocks_together():
    stream = io.StringIO()
    sink = OutputSink(stream)
    opts = build_options("x", force_terminal=True)
    lines = ["x\n"] * 50

    def write(name):
        sink.write_file(name, lines, list(range(1, 51)), opts)

    threads = [threading.Thread(target=write, args=(f"file{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    blocks = stream.getvalue().split("\n\n")
    names = []
    for block in filter(None, blocks):
        rows = block.split("\n")
        names.append(rows[0])
        assert rows[1:] == [f"{n}: x" for n in range(1, 51)]
    assert sorted(names) == sorted(f"file{i}" for i in range(8))
