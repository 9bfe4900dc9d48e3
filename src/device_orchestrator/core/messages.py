"""Chat message construction for the reasoning model."""

import base64
import json

SYSTEM_PROMPTS = {
    "en": (
        "You are a phone automation agent. Each turn you receive a screenshot and "
        "screen info. Reply with your reasoning in <think></think> and exactly one "
        "action in <answer></answer>.\n"
        "Available actions:\n"
        '- do(action="Launch", app="<package>")\n'
        '- do(action="Tap", element=[x, y]) with coordinates from 0 to 999; add '
        'message="..." for sensitive operations such as payments\n'
        '- do(action="Type", text="...")\n'
        '- do(action="Swipe", start=[x1, y1], end=[x2, y2])\n'
        '- do(action="Double Tap", element=[x, y])\n'
        '- do(action="Long Press", element=[x, y])\n'
        '- do(action="Back") / do(action="Home")\n'
        '- do(action="Wait", duration="2 seconds")\n'
        '- do(action="Take_over", message="...") when a human must step in\n'
        '- finish(message="<result for the user>") when the task is done'
    ),
    "cn": (
        "你是一个手机自动化助手。每一轮你会收到屏幕截图和屏幕信息。"
        "请在<think></think>中给出思考过程，并在<answer></answer>中给出且仅给出一个操作。\n"
        "可用操作：\n"
        '- do(action="Launch", app="<包名>")\n'
        '- do(action="Tap", element=[x, y])，坐标范围0-999；敏感操作请附加message="..."\n'
        '- do(action="Type", text="...")\n'
        '- do(action="Swipe", start=[x1, y1], end=[x2, y2])\n'
        '- do(action="Double Tap", element=[x, y])\n'
        '- do(action="Long Press", element=[x, y])\n'
        '- do(action="Back") / do(action="Home")\n'
        '- do(action="Wait", duration="2 seconds")\n'
        '- do(action="Take_over", message="...") 需要人工介入时\n'
        '- finish(message="<给用户的结果>") 任务完成时'
    ),
}


def get_system_prompt(lang: str = "en") -> str:
    return SYSTEM_PROMPTS.get(lang, SYSTEM_PROMPTS["en"])


def create_system_message(content: str) -> dict:
    return {"role": "system", "content": content}


def create_user_message(text: str, image: bytes | None = None) -> dict:
    content: list[dict] = []
    if image is not None:
        encoded = base64.b64encode(image).decode("ascii")
        content.append({
            "type": "image_url",
            "image_url": {"url": f"data:image/png;base64,{encoded}"},
        })
    content.append({"type": "text", "text": text})
    return {"role": "user", "content": content}


def create_assistant_message(thinking: str, action: str) -> dict:
    return {
        "role": "assistant",
        "content": f"<think>{thinking}</think><answer>{action}</answer>",
    }


def remove_images(message: dict) -> dict:
    """Return a copy of the message with image parts dropped."""
    content = message.get("content")
    if not isinstance(content, list):
        return message
    return {
        **message,
        "content": [part for part in content if part.get("type") == "text"],
    }


def build_screen_info(current_app: str, **extra) -> str:
    return json.dumps({"current_app": current_app, **extra}, ensure_ascii=False)


def build_first_step_prompt(
    task: str,
    current_app: str,
    dependency_results: dict[str, str] | None = None,
) -> str:
    parts = [task]
    if dependency_results:
        parts.append("\n** Results of prerequisite tasks **")
        for dep_id, result in sorted(dependency_results.items()):
            parts.append(f"- {dep_id}: {result}")
    parts.append(f"\n** Screen Info **\n{build_screen_info(current_app)}")
    return "\n".join(parts)


def build_step_prompt(current_app: str) -> str:
    return f"** Screen Info **\n\n{build_screen_info(current_app)}"
