"""
GUI agent: ask a vision-language model for the next UI action and perform it.

The model receives the instruction and a screenshot and answers with text
containing an `Action:` line such as

    Action: click(point='<point>500 400</point>')

Points are normalized to 0..1000 on both axes and are scaled to the pixel
size of the screenshot that was sent.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np
import requests

from .actions import DesktopBackend, RunContext
from .errors import AutomationError, ValidationError
from .models import EngineSettings
from .params import get_bool, get_str, get_uint
from .script_model import WorkflowNode
from .var_math import round_half_away

DEFAULT_BASE_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4.1-mini"
SUPPORTED_IMAGE_FORMATS = ("png", "jpg", "jpeg", "webp", "bmp")

Point = Tuple[float, float]

_NUM = r"([+-]?\d+(?:\.\d+)?)"
_POINT = r"'\s*<point>\s*" + _NUM + r"\s+" + _NUM + r"\s*</point>\s*'"

_THINK_RE = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_ACTION_RE = re.compile(r"Action:\s*(.+)", re.IGNORECASE)
_DRAG_RE = re.compile(
    r"^drag\s*\(\s*start_point\s*=\s*" + _POINT + r"\s*,\s*end_point\s*=\s*" + _POINT + r"\s*\)\s*$",
    re.IGNORECASE,
)
_SCROLL_RE = re.compile(
    r"^scroll\s*\(\s*point\s*=\s*" + _POINT + r"\s*,\s*direction\s*=\s*'\s*(down|up|right|left)\s*'\s*\)\s*$",
    re.IGNORECASE,
)
_ESCAPES = {"n": "\n", "\\": "\\", "'": "'", '"': '"'}


@dataclass
class GuiAgentAction:
    """One parsed model action. `kind` is the action name as the model wrote it."""

    kind: str
    point: Optional[Point] = None
    end: Optional[Point] = None
    text: str = ""
    direction: str = ""


# --- request side -------------------------------------------------------------

def _ends_with_version_segment(url: str) -> bool:
    segment = url.rsplit("/", 1)[-1]
    return len(segment) >= 2 and segment[0] == "v" and segment[1:].isdigit()


def resolve_chat_endpoint(base_url: str) -> str:
    """Turn a provider base URL into its chat-completions endpoint."""
    trimmed = base_url.strip().rstrip("/")
    if trimmed.endswith("/chat/completions"):
        return trimmed
    if trimmed.endswith("/models"):
        root = trimmed[: -len("/models")]
        if _ends_with_version_segment(root):
            return f"{root}/chat/completions"
        return f"{root}/v1/chat/completions"
    if _ends_with_version_segment(trimmed):
        return f"{trimmed}/chat/completions"
    return f"{trimmed}/v1/chat/completions"


def normalize_base64_input(raw: str) -> str:
    """Strip a `data:image/...;base64,` prefix if present."""
    trimmed = raw.strip()
    head, sep, tail = trimmed.partition(",")
    if sep and "base64" in head:
        return tail.strip()
    return trimmed


def decode_image_dimensions(base64_image: str, image_format: str) -> Tuple[int, int]:
    """(width, height) of a base64-encoded screenshot."""
    fmt = image_format.lower()
    if fmt not in SUPPORTED_IMAGE_FORMATS:
        raise ValidationError(f"GUI agent: unsupported imageFormat '{image_format}'")
    try:
        data = base64.b64decode(base64_image, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"GUI agent: image base64 decoding failed: {exc}") from exc
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise ValidationError("GUI agent: image could not be decoded")
    height, width = image.shape[:2]
    return int(width), int(height)


def build_payload(model: str, system_prompt: str, image_format: str, base64_image: str, max_tokens: int) -> Dict[str, Any]:
    return {
        "model": model,
        "temperature": 0,
        "max_tokens": max_tokens,
        "messages": [
            {"role": "user", "content": system_prompt},
            {
                "role": "user",
                "content": [
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:image/{image_format};base64,{base64_image}"},
                    }
                ],
            },
        ],
    }


def request_completion(endpoint: str, api_key: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    """POST an OpenAI-compatible chat request; returns the decoded JSON body."""
    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}
    try:
        r = requests.post(endpoint, headers=headers, json=payload, timeout=(5, timeout))
    except requests.RequestException as e:
        raise AutomationError(f"GUI agent request failed: {e}") from e
    if not 200 <= r.status_code < 300:
        raise AutomationError(f"GUI agent request returned {r.status_code}: {r.text}")
    try:
        return r.json()
    except ValueError as e:
        raise AutomationError(f"GUI agent response is not valid JSON: {e}") from e


def extract_message_content(response_json: Any) -> str:
    try:
        content = response_json["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise AutomationError("GUI agent response is missing choices[0].message.content") from None

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if not isinstance(text, str):
                text = part.get("content")
            if isinstance(text, str):
                texts.append(text)
        merged = "\n".join(texts)
        if merged.strip():
            return merged
    raise AutomationError("GUI agent could not read text from message.content")


# --- parsing ------------------------------------------------------------------

def strip_think_sections(content: str) -> str:
    return _THINK_RE.sub("", content)


def extract_action_expression(content: str) -> str:
    """The first `Action:` line, without surrounding backticks."""
    match = _ACTION_RE.search(content)
    expression = match.group(1).strip() if match else ""
    if not expression:
        raise AutomationError("GUI agent reply has no parsable Action line")
    return expression.strip("`").strip()


def unescape_agent_string(content: str) -> str:
    out: List[str] = []
    chars = iter(content)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt is None:
            out.append("\\")
        elif nxt in _ESCAPES:
            out.append(_ESCAPES[nxt])
        else:
            out.append("\\" + nxt)
    return "".join(out)


def _point_re(name: str) -> "re.Pattern[str]":
    return re.compile(r"^" + re.escape(name) + r"\s*\(\s*point\s*=\s*" + _POINT + r"\s*\)\s*$", re.IGNORECASE)


def _string_arg_re(name: str, arg: str) -> "re.Pattern[str]":
    return re.compile(
        r"^" + re.escape(name) + r"\s*\(\s*" + re.escape(arg) + r"\s*=\s*'(.*)'\s*\)\s*$",
        re.IGNORECASE | re.DOTALL,
    )


_POINT_ACTIONS = {name: _point_re(name) for name in ("click", "left_double", "right_single")}
_HOTKEY_RE = _string_arg_re("hotkey", "key")
_TYPE_RE = _string_arg_re("type", "content")
_FINISHED_RE = _string_arg_re("finished", "content")


def parse_action(expression: str) -> GuiAgentAction:
    expr = expression.strip()

    for name, pattern in _POINT_ACTIONS.items():
        m = pattern.match(expr)
        if m:
            return GuiAgentAction(name, point=(float(m.group(1)), float(m.group(2))))

    m = _DRAG_RE.match(expr)
    if m:
        return GuiAgentAction(
            "drag",
            point=(float(m.group(1)), float(m.group(2))),
            end=(float(m.group(3)), float(m.group(4))),
        )

    m = _HOTKEY_RE.match(expr)
    if m:
        return GuiAgentAction("hotkey", text=m.group(1))

    m = _TYPE_RE.match(expr)
    if m:
        return GuiAgentAction("type", text=unescape_agent_string(m.group(1)))

    m = _SCROLL_RE.match(expr)
    if m:
        return GuiAgentAction(
            "scroll",
            point=(float(m.group(1)), float(m.group(2))),
            direction=m.group(3).lower(),
        )

    if expr.lower() == "wait()":
        return GuiAgentAction("wait")

    m = _FINISHED_RE.match(expr)
    if m:
        return GuiAgentAction("finished", text=unescape_agent_string(m.group(1)))

    raise AutomationError(f"GUI agent returned an unsupported action: {expression}")


def relative_to_absolute(point: Point, image_width: int, image_height: int) -> Tuple[int, int]:
    x = point[0] / 1000.0 * image_width
    y = point[1] / 1000.0 * image_height
    return int(round_half_away(x)), int(round_half_away(y))


# --- execution ----------------------------------------------------------------

async def apply_action(
    action: GuiAgentAction,
    image_width: int,
    image_height: int,
    desktop: DesktopBackend,
    ctx: RunContext,
    wait_seconds: float = 5.0,
) -> None:
    kind = action.kind

    if kind in ("click", "left_double", "right_single"):
        assert action.point is not None
        x, y = relative_to_absolute(action.point, image_width, image_height)
        if kind == "right_single":
            desktop.button_down(x, y, "right")
            desktop.button_up(x, y, "right")
        else:
            desktop.click(x, y, 2 if kind == "left_double" else 1)
        ctx.info(
            f"GUI agent {kind}: relative=({action.point[0]:.2f}, {action.point[1]:.2f}) -> absolute=({x}, {y})"
        )
        return

    if kind == "drag":
        assert action.point is not None and action.end is not None
        sx, sy = relative_to_absolute(action.point, image_width, image_height)
        ex, ey = relative_to_absolute(action.end, image_width, image_height)
        desktop.drag(sx, sy, ex, ey)
        ctx.info(f"GUI agent drag: ({sx}, {sy}) -> ({ex}, {ey})")
        return

    if kind == "hotkey":
        tokens = action.text.split()
        if not tokens:
            raise ValidationError("GUI agent hotkey is empty")
        if len(tokens) > 3:
            raise ValidationError("GUI agent hotkey has more than 3 keys; refusing to run it")
        if len(tokens) == 1:
            desktop.key_tap(tokens[0])
        else:
            desktop.shortcut(tokens[:-1], tokens[-1])
        ctx.info(f"GUI agent hotkey: {action.text}")
        return

    if kind == "type":
        desktop.type_text(action.text)
        suffix = " (ends with newline)" if action.text.endswith("\n") else ""
        ctx.info(f"GUI agent type: {len(action.text)} chars{suffix}")
        return

    if kind == "scroll":
        assert action.point is not None
        x, y = relative_to_absolute(action.point, image_width, image_height)
        desktop.move_to(x, y)
        if action.direction == "up":
            desktop.wheel(1)
        elif action.direction == "down":
            desktop.wheel(-1)
        else:
            raise ValidationError(
                f"GUI agent scroll direction={action.direction} is not supported (only up/down)"
            )
        ctx.info(f"GUI agent scroll {action.direction} at ({x}, {y})")
        return

    if kind == "wait":
        await ctx.sleep(wait_seconds)
        frame = await asyncio.to_thread(desktop.capture_fullscreen)
        height, width = frame.shape[:2]
        ctx.info(f"GUI agent wait: waited {wait_seconds:g}s and captured the screen again ({width}x{height})")
        return

    if kind == "finished":
        ctx.info(f"GUI agent finished: {action.text}")
        return

    raise AutomationError(f"GUI agent returned an unsupported action: {kind}")


async def run_gui_agent(
    node: WorkflowNode,
    desktop: DesktopBackend,
    ctx: RunContext,
    settings: EngineSettings,
) -> GuiAgentAction:
    """Run one guiAgent node: request, parse, act. Returns the performed action."""
    ctx.check_cancel()

    base_url = get_str(node, "baseUrl", DEFAULT_BASE_URL)
    api_key = get_str(node, "apiKey", "")
    model = get_str(node, "model", DEFAULT_MODEL)
    instruction = get_str(node, "instruction", "")
    image_input = get_str(node, "imageInput", "")
    image_format = get_str(node, "imageFormat", "png").lower()
    max_tokens = get_uint(node, "maxTokens", 512)
    strip_think = get_bool(node, "stripThink", True)
    system_prompt = get_str(node, "systemPrompt", "{instruction}").replace("{instruction}", instruction)

    for key, value in (("baseUrl", base_url), ("apiKey", api_key), ("model", model), ("imageInput", image_input)):
        if not value.strip():
            raise ValidationError(f"node '{node.id}' GUI agent {key} cannot be empty")

    cleaned = normalize_base64_input(image_input)
    width, height = decode_image_dimensions(cleaned, image_format)
    payload = build_payload(model, system_prompt, image_format, cleaned, max_tokens)

    response_json = await asyncio.to_thread(
        request_completion, resolve_chat_endpoint(base_url), api_key, payload, settings.gui_agent_timeout_s
    )
    content = extract_message_content(response_json)
    if strip_think:
        content = strip_think_sections(content)

    expression = extract_action_expression(content)
    action = parse_action(expression)
    ctx.info(f"GUI agent node '{node.label}' model action: {expression} (image {width}x{height})")

    await apply_action(action, width, height, desktop, ctx, settings.gui_agent_wait_s)
    return action
