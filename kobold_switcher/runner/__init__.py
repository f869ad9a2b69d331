"""Supervision of the child model server process."""
