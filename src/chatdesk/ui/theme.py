"""
Colour palettes and page CSS for the chat UI.
"""

DARK_THEME = {
    "bg_primary": "#202123",
    "bg_secondary": "#171717",
    "bg_hover": "#2a2b32",
    "bubble_user": "#005c4b",
    "bubble_model": "#2b2c31",
    "text_primary": "#ececf1",
    "text_secondary": "#9a9aa5",
    "accent": "#10a37f",
    "border": "#3a3b42",
    "link": "#60a5fa",
    "error": "#ef4444",
}

LIGHT_THEME = {
    "bg_primary": "#ffffff",
    "bg_secondary": "#f7f7f8",
    "bg_hover": "#ececf1",
    "bubble_user": "#d9fdd3",
    "bubble_model": "#f0f0f3",
    "text_primary": "#1f2328",
    "text_secondary": "#6e6e80",
    "accent": "#10a37f",
    "border": "#e3e3e8",
    "link": "#2563eb",
    "error": "#dc2626",
}


def get_theme(mode: str = "dark") -> dict:
    return DARK_THEME if mode == "dark" else LIGHT_THEME


def generate_css(theme: dict) -> str:
    return f"""
body {{
    font-family: 'Inter', -apple-system, 'Segoe UI', sans-serif;
    background: {theme['bg_primary']};
    color: {theme['text_primary']};
}}

.bubble {{
    max-width: 80%;
    padding: 10px 14px;
    border-radius: 12px;
    line-height: 1.55;
    word-break: break-word;
}}

.bubble-user {{
    align-self: flex-end;
    background: {theme['bubble_user']};
}}

.bubble-model {{
    align-self: flex-start;
    background: {theme['bubble_model']};
}}

.bubble pre {{
    background: rgba(0, 0, 0, 0.35);
    border-radius: 8px;
    padding: 10px;
    overflow-x: auto;
}}

.sources {{
    margin-top: 8px;
    padding-top: 6px;
    border-top: 1px solid {theme['border']};
    font-size: 12px;
    color: {theme['text_secondary']};
}}

.sources a {{
    color: {theme['link']};
    word-break: break-all;
}}

.conversation-item {{
    border-radius: 8px;
    padding: 8px 10px;
    cursor: pointer;
    white-space: nowrap;
    overflow: hidden;
    text-overflow: ellipsis;
}}

.conversation-item:hover, .conversation-item.active {{
    background: {theme['bg_hover']};
}}

.typing {{
    color: {theme['text_secondary']};
    font-style: italic;
}}

.canvas-preview iframe {{
    width: 100%;
    height: 100%;
    border: none;
    background: white;
}}
"""
