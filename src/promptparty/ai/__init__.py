"""Image generation backends.

Each provider turns a prompt plus the round's question into an image
reference. OpenAI and Gemini need API keys; without one, development
setups fall back to the offline placeholder provider.
"""
