"""Plan orchestration: scheduling, agent processes, checkpoints."""
