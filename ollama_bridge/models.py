from pydantic import BaseModel


# --- Local protocol (Ollama) request ---
class LocalMessage(BaseModel):
    role: str
    content: str = ""
    images: list[str] | None = None


class LocalChatRequest(BaseModel):
    model: str
    messages: list[LocalMessage] = []
    stream: bool = False


# --- Remote protocol (OpenAI) request ---
class RemoteMessage(BaseModel):
    role: str
    content: str


class RemoteChatRequest(BaseModel):
    model: str
    messages: list[RemoteMessage]
    stream: bool = False


# --- Remote protocol (OpenAI) non-streaming reply ---
class AssistantMessage(BaseModel):
    role: str = ""
    content: str | None = None


class Choice(BaseModel):
    index: int = 0
    message: AssistantMessage = AssistantMessage()
    finish_reason: str | None = None


class RemoteChatReply(BaseModel):
    id: str = ""
    object: str = "chat.completion"
    created: int = 0
    model: str = ""
    choices: list[Choice] = []


# --- Remote protocol (OpenAI) streaming event (one SSE data payload) ---
class DeltaMessage(BaseModel):
    role: str | None = None
    content: str | None = None


class StreamChoice(BaseModel):
    index: int = 0
    delta: DeltaMessage = DeltaMessage()
    finish_reason: str | None = None


class RemoteStreamEvent(BaseModel):
    id: str = ""
    object: str = "chat.completion.chunk"
    created: int = 0
    model: str = ""
    choices: list[StreamChoice] = []


# --- Local protocol (Ollama) replies ---
class LocalReplyMessage(BaseModel):
    role: str = "assistant"
    content: str = ""


class LocalChatReply(BaseModel):
    model: str
    created_at: str
    message: LocalReplyMessage
    done: bool = True


class LocalStreamUnit(BaseModel):
    model: str
    created_at: str
    message: LocalReplyMessage
    done: bool = False


# --- Model listing ---
class RemoteModel(BaseModel):
    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = ""


class RemoteModelList(BaseModel):
    object: str = "list"
    data: list[RemoteModel] = []


class LocalModelDetails(BaseModel):
    parent_model: str = ""
    format: str = ""
    family: str = ""
    families: list[str] | None = None
    parameter_size: str = ""
    quantization_level: str = ""


class LocalModel(BaseModel):
    name: str
    model: str
    modified_at: str
    size: int = 0
    digest: str = ""
    details: LocalModelDetails = LocalModelDetails()


class LocalTagsResponse(BaseModel):
    models: list[LocalModel]


class LocalVersionResponse(BaseModel):
    version: str
