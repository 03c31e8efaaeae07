"""
Command-line entrypoints, each a thin docopt wrapper around a task.
"""
