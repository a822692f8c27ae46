"""weft: parallel coding-agent workers in git worktrees and tmux windows."""

__version__ = "0.1.0"
