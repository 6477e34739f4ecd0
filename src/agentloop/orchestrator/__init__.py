"""Worker orchestration for checklist-driven CLI LLM loops.

Each worker owns a tool fallback chain and a transcript; workers share only
the stop coordinator and the checklist files, and the files are touched
solely under the checklist lock.
"""
