"""
Command line interface for the sandbox devtools.
"""
