"""Model-facing reasoning client and its prompts."""
