"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取提示词文本：
- identity：每次对话系统提示词开头的身份说明。
- title：生成会话标题时使用的固定指令。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def load_prompt(name: str, locale: str = "en") -> str:
    """根据名称和语言加载提示词文本（去掉首尾空白）。"""

    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8").strip()


def load_identity_prompt(locale: str = "en") -> str:
    return load_prompt("identity", locale)


def load_title_prompt(locale: str = "en") -> str:
    return load_prompt("title", locale)
