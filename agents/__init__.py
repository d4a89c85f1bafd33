"""
agents: intent resolution for the options trading pipeline.

- IntentResolutionLoop: drives a tool-calling model over live market data to a TradeSpec
- OpenAIToolChat: the chat-completions capability the loop talks to
"""
