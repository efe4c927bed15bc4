"""Root-level conftest.py: makes this checkout's perch package importable.

Its presence puts the repository root on sys.path, so the tests run
against the working tree without an editable install, and
``tests.fixtures`` resolves as a package path.
"""
