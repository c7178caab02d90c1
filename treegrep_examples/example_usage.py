"""Example: using treegrep from code.

Run with: python treegrep_examples/example_usage.py [pattern] [path]
"""
import sys

from treegrep import OutputSink, Searcher, build_options, load_config


def main():
    pattern = sys.argv[1] if len(sys.argv) > 1 else "def "
    path = sys.argv[2] if len(sys.argv) > 2 else "."
    options = build_options(pattern, context=1, force_terminal=True, config=load_config())
    stats = Searcher(options, OutputSink(), limit=4).run(path)
    print(stats.summary())

if __name__ == '__main__':
    main()
