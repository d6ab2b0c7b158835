"""
NiceGUI pages — the chat page with its conversation sidebar, and the HTML
canvas that can post its code into a new conversation.
"""
import html
from typing import Dict, List, Optional, Tuple

import structlog
from nicegui import app, ui

from chatdesk.config import get_config
from chatdesk.schemas import Attachment, Message
from chatdesk.services.chat_session import ChatSession, ProviderGenerator, SessionRegistry
from chatdesk.services.providers import get_provider_router
from chatdesk.services.repositories import LocalConversationRepository
from chatdesk.ui.theme import generate_css, get_theme
from chatdesk.ui.uploads import attachment_from_upload, code_block

log = structlog.get_logger()

PENDING_MESSAGE_KEY = "pending_message"

INITIAL_HTML = """<!DOCTYPE html>
<html>
<head>
  <title>Olá, Mundo!</title>
  <style>
    body { font-family: sans-serif; display: flex; justify-content: center;
           align-items: center; height: 100vh; margin: 0; background: #f0f0f0; }
    h1 { color: #007BFF; border: 2px solid #007BFF; padding: 20px; border-radius: 10px; }
  </style>
</head>
<body>
  <h1>Olá, Canvas!</h1>
</body>
</html>"""


def _theme_mode() -> str:
    return app.storage.user.get("theme", get_config().ui.theme)


def _apply_theme(theme_mode: str) -> dict:
    theme = get_theme(theme_mode)
    ui.add_head_html(f"<style>{generate_css(theme)}</style>")
    ui.dark_mode(value=theme_mode == "dark")
    return theme


def new_session(browser_id: str) -> ChatSession:
    """Session for one browser, with its own history file."""
    cfg = get_config()
    return ChatSession(
        generator=ProviderGenerator(get_provider_router()),
        repository=LocalConversationRepository.for_owner(cfg.chat.history_dir, browser_id),
    )


sessions = SessionRegistry(new_session)


class ChatPage:
    """Chat UI bound to one ChatSession."""

    def __init__(self, session: ChatSession):
        self.cfg = get_config()
        self.session = session
        self.theme_mode = _theme_mode()
        self.attachment: Optional[Attachment] = None

        self.sidebar_list = None
        self.message_container = None
        self.scroll_area = None
        self.input_area = None
        self.send_button = None
        self.attachment_row = None
        self.upload = None

        # what is on screen, to patch text in place while streaming
        self._rendered: Tuple[Optional[str], List[str]] = (None, [])
        self._markdown: Dict[str, ui.markdown] = {}
        self._sources: Dict[str, int] = {}
        self._sidebar_state = None

    def build(self):
        theme = _apply_theme(self.theme_mode)

        with ui.header().classes("items-center justify-between px-4 py-2").style(
            f"background: {theme['bg_secondary']}; border-bottom: 1px solid {theme['border']};"
        ):
            with ui.row().classes("items-center gap-3"):
                ui.button(icon="menu", on_click=lambda: drawer.toggle()).props("flat dense round")
                ui.label(self.cfg.ui.title).classes("text-lg font-semibold")
            with ui.row().classes("items-center gap-2"):
                ui.button(icon="code", on_click=lambda: ui.navigate.to("/canvas")).props(
                    "flat dense round"
                ).tooltip("Canvas")

        with ui.left_drawer(value=True).classes("p-2").style(
            f"width: {self.cfg.ui.sidebar_width}px; background: {theme['bg_secondary']};"
        ) as drawer:
            self._build_sidebar()

        self._build_chat_area(theme)

        unsubscribe = self.session.subscribe(self._on_change)
        ui.context.client.on_disconnect(unsubscribe)
        ui.timer(0.1, self._init_data, once=True)

    def _build_sidebar(self):
        with ui.column().classes("w-full h-full no-wrap"):
            ui.button("Nova Conversa", icon="add", on_click=self._new_conversation).classes(
                "w-full"
            ).props("flat no-caps align=left")
            self.sidebar_list = ui.column().classes("w-full gap-1 flex-grow")
            ui.separator()
            ui.button("Limpar conversas", icon="delete_sweep", on_click=self._confirm_clear).classes(
                "w-full"
            ).props("flat no-caps align=left")
            ui.button(
                "Modo claro" if self.theme_mode == "dark" else "Modo escuro",
                icon="light_mode" if self.theme_mode == "dark" else "dark_mode",
                on_click=self._toggle_theme,
            ).classes("w-full").props("flat no-caps align=left")

    def _build_chat_area(self, theme: dict):
        with ui.column().classes("w-full no-wrap").style(
            "max-width: 860px; margin: 0 auto; height: calc(100vh - 90px);"
        ):
            with ui.scroll_area().classes("flex-grow w-full") as scroll:
                self.message_container = ui.column().classes("w-full gap-3")
                self.scroll_area = scroll

            self.attachment_row = ui.row().classes("w-full items-center gap-2")

            with ui.row().classes("w-full items-end gap-2 no-wrap"):
                self.upload = ui.upload(
                    on_upload=self._on_upload, auto_upload=True, max_files=1,
                ).props("flat dense accept=image/*,text/*,.md,.json,.csv,.py,.js,.html").classes("hidden")
                ui.button(icon="attach_file", on_click=lambda: self.upload.run_method("pickFiles")).props(
                    "flat round dense"
                )
                self.input_area = ui.textarea(placeholder="Digite sua mensagem...").classes(
                    "flex-grow"
                ).props("autogrow outlined dense rows=1").on("keydown.enter.prevent", self._send)
                self.send_button = ui.button(icon="send", on_click=self._on_send_click).props(
                    "round dense"
                ).style(f"background: {theme['accent']}; color: white;")

    # ---- Data ----

    async def _init_data(self):
        self.session.ensure_current()
        self._on_change()
        pending = app.storage.user.pop(PENDING_MESSAGE_KEY, None)
        if pending:
            self.session.start_new_conversation()
            await self.session.send_message(pending)

    # ---- Rendering ----

    def _on_change(self):
        self._render_sidebar()
        self._render_messages()
        self._render_send_button()

    def _render_sidebar(self):
        state = (
            self.session.current_conversation_id,
            [(c.id, c.title) for c in self.session.conversations],
        )
        if state == self._sidebar_state:
            return
        self._sidebar_state = state

        self.sidebar_list.clear()
        with self.sidebar_list:
            for conversation in self.session.conversations:
                active = conversation.id == self.session.current_conversation_id
                with ui.row().classes(
                    "conversation-item w-full items-center justify-between no-wrap"
                    + (" active" if active else "")
                ).on("click", lambda _, cid=conversation.id: self.session.select_conversation(cid)):
                    ui.label(conversation.title or self.cfg.chat.default_title).classes("truncate")
                    ui.button(icon="close").props("flat dense round size=xs").on(
                        "click.stop", lambda _, cid=conversation.id: self._delete_conversation(cid),
                    )

    def _render_messages(self):
        conversation = self.session.current_conversation
        ids = [m.id for m in conversation.messages] if conversation else []
        state = (conversation.id if conversation else None, ids)

        if state == self._rendered and self._patch_messages(conversation):
            return

        self._rendered = state
        self._markdown.clear()
        self._sources.clear()
        self.message_container.clear()
        if conversation is None:
            return
        with self.message_container:
            for message in conversation.messages:
                self._render_message(message)
        self.scroll_area.scroll_to(percent=1.0)

    def _patch_messages(self, conversation) -> bool:
        """Update streamed text in place; False when a full redraw is needed."""
        for message in conversation.messages:
            if len(message.grounding_chunks or []) != self._sources.get(message.id, 0):
                return False
            element = self._markdown.get(message.id)
            if element is not None and element.content != self._display_text(message):
                element.set_content(self._display_text(message))
        self.scroll_area.scroll_to(percent=1.0)
        return True

    def _display_text(self, message: Message) -> str:
        if message.role == "model" and not message.content and self.session.is_generating(
            self.session.current_conversation_id
        ):
            return "_digitando..._"
        return message.content

    def _render_message(self, message: Message):
        css = "bubble bubble-user" if message.role == "user" else "bubble bubble-model"
        with ui.column().classes(css + " gap-1"):
            attachment = message.attachment
            if attachment and attachment.is_image and attachment.data:
                ui.image(f"data:{attachment.mime_type};base64,{attachment.data}").classes("w-64 rounded")
            elif attachment:
                with ui.row().classes("items-center gap-1"):
                    ui.icon("description", size="xs")
                    ui.label(attachment.name or attachment.mime_type).classes("text-sm")

            self._markdown[message.id] = ui.markdown(self._display_text(message), extras=["fenced-code-blocks", "tables"])

            sources = message.grounding_chunks or []
            self._sources[message.id] = len(sources)
            if sources:
                links = "".join(
                    f'<li><a href="{html.escape(s.web.uri)}" target="_blank" rel="noopener noreferrer" '
                    f'title="{html.escape(s.web.title)}">{html.escape(s.web.title or s.web.uri)}</a></li>'
                    for s in sources
                )
                ui.html(f'<div class="sources">Fontes:<ol>{links}</ol></div>')

    def _render_send_button(self):
        if self.session.is_typing:
            self.send_button.props("icon=stop")
        else:
            self.send_button.props("icon=send")

    def _render_attachment(self):
        self.attachment_row.clear()
        if self.attachment is None:
            return
        with self.attachment_row:
            if self.attachment.is_image:
                ui.image(f"data:{self.attachment.mime_type};base64,{self.attachment.data}").classes("w-16 rounded")
            ui.label(self.attachment.name).classes("text-sm")
            ui.button(icon="close", on_click=self._remove_attachment).props("flat dense round size=sm")

    # ---- Actions ----

    def _new_conversation(self):
        self.session.start_new_conversation()

    async def _delete_conversation(self, conversation_id: str):
        self.session.delete_conversation(conversation_id)
        self.session.ensure_current()
        await self.session.save()

    async def _confirm_clear(self):
        with ui.dialog() as dialog, ui.card():
            ui.label("Apagar todo o histórico de conversas?")
            with ui.row():
                ui.button("Cancelar", on_click=lambda: dialog.submit(False)).props("flat")
                ui.button("Apagar", on_click=lambda: dialog.submit(True)).props("color=negative")
        if await dialog:
            self.session.clear_history()
            self.session.ensure_current()
            await self.session.save()

    def _toggle_theme(self):
        app.storage.user["theme"] = "light" if self.theme_mode == "dark" else "dark"
        ui.navigate.reload()

    async def _on_upload(self, e):
        self.attachment = attachment_from_upload(e.name, e.content.read(), e.type or None)
        self.upload.reset()
        self._render_attachment()

    def _remove_attachment(self):
        self.attachment = None
        self._render_attachment()

    async def _on_send_click(self):
        if self.session.is_typing:
            self.session.stop_generating()
            return
        await self._send()

    async def _send(self):
        text = self.input_area.value or ""
        attachment = self.attachment
        if not text.strip() and attachment is None:
            return
        self.input_area.value = ""
        self.attachment = None
        self._render_attachment()
        await self.session.send_message(text, attachment)


class CanvasPage:
    """HTML editor with a live preview."""

    def __init__(self):
        self.code = app.storage.user.get("canvas_code", INITIAL_HTML)
        self.preview = None

    def build(self):
        _apply_theme(_theme_mode())

        with ui.header().classes("items-center justify-between px-4 py-2"):
            with ui.row().classes("items-center gap-3"):
                ui.button(icon="arrow_back", on_click=lambda: ui.navigate.to("/")).props("flat dense round")
                ui.label("Canvas - Editor de Código").classes("text-lg font-semibold")
            ui.button("Enviar para Conversa", icon="send", on_click=self._send_to_chat).props("no-caps")

        with ui.row().classes("w-full no-wrap gap-0").style("height: calc(100vh - 64px);"):
            with ui.column().classes("w-1/2 h-full"):
                ui.label("Editor (HTML, CSS, JS)").classes("p-2 font-semibold")
                ui.codemirror(self.code, language="HTML", on_change=self._on_edit).classes("w-full flex-grow")
            with ui.column().classes("w-1/2 h-full canvas-preview"):
                ui.label("Visualização").classes("p-2 font-semibold")
                self.preview = ui.html(self._iframe()).classes("w-full flex-grow")

    def _iframe(self) -> str:
        return f'<iframe sandbox="allow-scripts" srcdoc="{html.escape(self.code, quote=True)}"></iframe>'

    def _on_edit(self, e):
        self.code = e.value or ""
        app.storage.user["canvas_code"] = self.code
        self.preview.set_content(self._iframe())

    def _send_to_chat(self):
        if not self.code.strip():
            return
        app.storage.user[PENDING_MESSAGE_KEY] = code_block(self.code, "html")
        ui.navigate.to("/")


def register_pages():
    @ui.page("/")
    async def main_page():
        session = await sessions.get(app.storage.browser["id"])
        ChatPage(session).build()

    @ui.page("/canvas")
    def canvas_page():
        CanvasPage().build()

    log.info("ui_pages_registered", pages=["/", "/canvas"])
