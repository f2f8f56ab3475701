"""Conversation context for generated speech — system prompt + recent exchanges."""

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful voice assistant. Your reply will be read aloud, "
    "so keep it to one to three plain sentences with no markdown."
)
DEFAULT_MAX_TURNS = 10


class ConversationHistory:
    """The last few prompt/reply exchanges, replayed to the model each time.

    Only completed exchanges are stored, so a failed generation never
    leaves a dangling user message behind. ``max_turns`` counts messages;
    trimming drops whole exchanges from the front.
    """

    def __init__(self, system: str = "", max_turns: int = DEFAULT_MAX_TURNS):
        self.system = system or DEFAULT_SYSTEM_PROMPT
        self.max_turns = max(max_turns, 2)
        self._exchanges: list[tuple[str, str]] = []

    def add_exchange(self, prompt: str, reply: str):
        self._exchanges.append((prompt, reply))
        keep = self.max_turns // 2
        if len(self._exchanges) > keep:
            del self._exchanges[:-keep]

    def get_messages(self) -> list[dict]:
        messages = []
        for prompt, reply in self._exchanges:
            messages.append({"role": "user", "content": prompt})
            messages.append({"role": "assistant", "content": reply})
        return messages

    def __len__(self) -> int:
        return 2 * len(self._exchanges)
