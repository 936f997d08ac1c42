"""
Test Suite for Standup Orchestrator

One module per standup/ component; shared fakes and fixtures live in
conftest.py.
"""
