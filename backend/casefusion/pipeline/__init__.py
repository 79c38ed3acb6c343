"""Analysis pipeline stages and the orchestrator that sequences them."""
