"""User-facing messages shown by the studio, kept in the application's language (pt-BR)."""

INVALID_API_KEY = "A chave de API selecionada é inválida. Por favor, selecione uma chave de API válida."
VIDEO_FAILED = "Falha ao gerar o vídeo. Verifique se sua chave de API está configurada corretamente e tente novamente."
VIDEO_NO_DOWNLOAD_LINK = "Falha ao obter o link de download do vídeo."
VIDEO_CANCELLED = "A geração do vídeo foi cancelada."
VIDEO_TIMED_OUT = "A geração do vídeo excedeu o tempo máximo de espera. Tente novamente."

TEXT_FAILED = "Ocorreu um erro ao gerar o conteúdo. Tente novamente."
CHAT_FAILED = "Desculpe, ocorreu um erro ao processar sua solicitação. Por favor, tente novamente."
IMAGE_FAILED = "Ocorreu um erro ao processar a imagem. Tente novamente."
AUDIO_FAILED = "Ocorreu um erro ao gerar o áudio. Tente novamente."

NOT_AN_IMAGE = "Por favor, selecione um arquivo de imagem."
NOT_A_TEXT_FILE = "Por favor, selecione um arquivo de texto (.txt)."

ALL_FIELDS_REQUIRED = "Todos os campos são obrigatórios."
LOGIN_FIELDS_REQUIRED = "Nome de usuário e senha são obrigatórios."
USER_EXISTS = "Nome de usuário ou email já existe."
INVALID_LOGIN = "Usuário ou senha inválidos."

CHAT_GREETING = "Olá! Use-me para gerar qualquer tipo de texto ou para analisar seus documentos. O que vamos criar hoje?"
CHAT_SYSTEM_INSTRUCTION = (
    "Você é um assistente de IA versátil e poderoso no 'Estúdio: Criando com IA'. \n"
    "Sua principal função é gerar texto personalizado para qualquer finalidade solicitada pelo usuário "
    "e responder a perguntas com base no conteúdo de arquivos fornecidos. \n"
    "Seja preciso, criativo e prestativo."
)
