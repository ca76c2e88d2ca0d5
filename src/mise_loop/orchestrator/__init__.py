"""Task orchestration core for coding-agent runs against a git checkout.

The moving parts are deliberately file-based:

- the Board (``.mise/board.yaml``) declares tasks, groups and dependencies;
- one status document per task (``.mise/status/<id>.yaml``) is the single
  source of truth for readiness;
- ``.mise/run.lock`` guarantees one loop per project, with a heartbeat so a
  crashed loop can be detected and its ``in_progress`` tasks recovered;
- parallel batches run in per-task git worktrees and are merged back into
  the trunk branch in a deterministic order.

Everything an agent touches is plain files and git, so a human can inspect
or repair the state of a run with ordinary tools.
"""
