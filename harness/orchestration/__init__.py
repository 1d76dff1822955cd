"""
Orchestration Package

Run/Task state machine and the collaborators it composes:
- Keyword planning
- Step execution (workflow engine first, direct executors as fallback)
- Approval gating
- Activity streaming
"""
