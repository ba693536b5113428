"""omni: a terminal agent for language-model driven workspace tasks."""
