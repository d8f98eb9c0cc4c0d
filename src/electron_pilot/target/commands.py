"""Translate interaction verbs into expressions for the live page.

Every caller string is embedded through escape_js_string, so it reaches the
page as a JSON string literal and never as code. Selectors and hashes carrying
script URLs or markup are refused before an expression is built. The
generated expressions still go through the security manager like any other
command.
"""

from __future__ import annotations

import re
from typing import Any, Callable

from electron_pilot.security.errors import CommandArgumentError
from electron_pilot.security.sandbox import wrap_body
from electron_pilot.security.validator import escape_js_string, sanitize_selector

EVAL_COMMAND = "eval"

NAMED_KEYS: frozenset[str] = frozenset(
    {
        "Enter",
        "Escape",
        "Tab",
        "Space",
        "ArrowUp",
        "ArrowDown",
        "ArrowLeft",
        "ArrowRight",
        "Backspace",
        "Delete",
        "Home",
        "End",
        "PageUp",
        "PageDown",
    }
)

MODIFIER_FLAGS: dict[str, str] = {
    "ctrl": "ctrlKey",
    "control": "ctrlKey",
    "shift": "shiftKey",
    "alt": "altKey",
    "meta": "metaKey",
    "cmd": "metaKey",
    "command": "metaKey",
}

DEFAULT_CONSOLE_MESSAGE = "Hello from electron-pilot!"

_SCRIPT_CONTENT = re.compile(r"javascript\s*:|<\s*script", re.IGNORECASE)


def _arg(args: Any, *names: str) -> str:
    """First non-empty string argument among names."""
    if not isinstance(args, dict):
        return ""
    for name in names:
        value = args.get(name)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _checked_selector(selector: str) -> str:
    selector = sanitize_selector(selector)
    if _SCRIPT_CONTENT.search(selector):
        raise CommandArgumentError("Invalid selector: contains dangerous content")
    return selector


def get_eval_code(args: Any) -> str:
    """Caller code for the eval verb (a bare string or args["code"])."""
    code = args if isinstance(args, str) else _arg(args, "code")
    if not code.strip():
        raise CommandArgumentError('Missing code. Use: {"code": "document.title"}')
    return code


def _get_title(args: Any) -> str:
    return "document.title"


def _get_url(args: Any) -> str:
    return "window.location.href"


def _get_body_text(args: Any) -> str:
    return "document.body.innerText.substring(0, 500)"


def _click_button(args: Any) -> str:
    selector = escape_js_string(_checked_selector(_arg(args, "selector") or "button"))
    return f"""(function() {{
  const el = document.querySelector({selector});
  if (!el || el.disabled) return 'Button not found or disabled';
  el.focus();
  el.click();
  return 'Button clicked: ' + (el.textContent || '').trim().substring(0, 50);
}})()"""


def _click_by_text(args: Any) -> str:
    text = _arg(args, "text")
    if not text:
        raise CommandArgumentError('Missing text. Use: {"text": "button text"}')
    wanted = escape_js_string(text.strip())
    return f"""(function() {{
  const wanted = {wanted}.toLowerCase();
  const label = el => (el.textContent || el.value || el.getAttribute('aria-label') || '').trim();
  const candidates = Array.from(document.querySelectorAll('button, a, [role="button"], input[type="submit"], input[type="button"]'))
    .filter(el => {{ const r = el.getBoundingClientRect(); return r.width > 0 && r.height > 0 && !el.disabled; }});
  const match = candidates.find(el => label(el).toLowerCase() === wanted)
    || candidates.find(el => label(el).toLowerCase().includes(wanted));
  if (!match) return 'No clickable element found with text: ' + {wanted};
  match.focus();
  match.click();
  return 'Clicked: ' + label(match).substring(0, 50);
}})()"""


def _click_by_selector(args: Any) -> str:
    selector = _arg(args, "selector")
    if not selector:
        raise CommandArgumentError('Missing selector. Use: {"selector": "your-css-selector"}')
    selector = escape_js_string(_checked_selector(selector))
    return f"""(function() {{
  try {{
    const el = document.querySelector({selector});
    if (!el) return 'Element not found: ' + {selector};
    const rect = el.getBoundingClientRect();
    if (rect.width === 0 || rect.height === 0) return 'Element not visible';
    el.focus();
    el.click();
    return 'Successfully clicked element: ' + el.tagName;
  }} catch (e) {{
    return 'Error clicking element: ' + e.message;
  }}
}})()"""


def parse_shortcut(shortcut: str) -> tuple[str, str, list[str]]:
    """Split "Ctrl+Shift+K" into (key, code, modifier flags).

    Raises:
        CommandArgumentError: If the key or a modifier is not recognised.
    """
    parts = [p.strip() for p in shortcut.split("+")]
    if not parts or not parts[-1]:
        raise CommandArgumentError(f"Invalid keyboard shortcut: {shortcut}")

    key, modifiers = parts[-1], parts[:-1]
    flags = []
    for modifier in modifiers:
        flag = MODIFIER_FLAGS.get(modifier.lower())
        if flag is None:
            raise CommandArgumentError(f"Invalid keyboard shortcut: {shortcut}")
        if flag not in flags:
            flags.append(flag)

    if key in NAMED_KEYS:
        return (" " if key == "Space" else key), key, flags
    if len(key) == 1 and key.isprintable():
        if key.isascii() and key.isalpha():
            return key.lower(), f"Key{key.upper()}", flags
        if key.isascii() and key.isdigit():
            return key, f"Digit{key}", flags
        return key, "", flags
    raise CommandArgumentError(f"Invalid keyboard shortcut: {shortcut}")


def _send_keyboard_shortcut(args: Any) -> str:
    shortcut = _arg(args, "text", "shortcut")
    if not shortcut:
        raise CommandArgumentError('Missing shortcut. Use: {"text": "Ctrl+N"}')
    key, code, flags = parse_shortcut(shortcut)
    modifier_props = "".join(f"{flag}: true, " for flag in flags)
    return f"""(function() {{
  const event = new KeyboardEvent('keydown', {{key: {escape_js_string(key)}, code: {escape_js_string(code)}, {modifier_props}bubbles: true, cancelable: true}});
  (document.activeElement || document).dispatchEvent(event);
  return 'Keyboard shortcut sent: ' + {escape_js_string(shortcut)};
}})()"""


def _navigate_to_hash(args: Any) -> str:
    raw = _arg(args, "text", "hash").strip()
    if not raw:
        raise CommandArgumentError('Missing hash. Use: {"text": "#/settings"}')
    if _SCRIPT_CONTENT.search(raw) or "://" in raw:
        raise CommandArgumentError("Invalid hash: contains dangerous content")
    hash_value = escape_js_string(raw if raw.startswith("#") else "#" + raw)
    return f"""(function() {{
  const previous = window.location.href;
  window.history.pushState({{}}, '', window.location.pathname + window.location.search + {hash_value});
  window.dispatchEvent(new HashChangeEvent('hashchange', {{newURL: window.location.href, oldURL: previous}}));
  return 'Navigated to hash: ' + {hash_value};
}})()"""


def _fill_input(args: Any) -> str:
    value = _arg(args, "value", "text")
    if not value:
        raise CommandArgumentError(
            'Missing value. Use: {"value": "text", "selector": "..."} or {"value": "text", "placeholder": "..."}'
        )
    selector = _arg(args, "selector")
    selector = _checked_selector(selector) if selector else ""
    search = _arg(args, "placeholder") or (_arg(args, "text") if _arg(args, "value") else "")
    return f"""(function() {{
  try {{
    const selector = {escape_js_string(selector)};
    const search = {escape_js_string(search)}.toLowerCase();
    const describe = el => [el.placeholder, el.name, el.id, el.getAttribute('aria-label'), el.labels && el.labels[0] ? el.labels[0].textContent : '']
      .map(t => (t || '').toLowerCase());
    const fields = Array.from(document.querySelectorAll('input, textarea'))
      .filter(el => !el.disabled && !el.readOnly && el.getBoundingClientRect().width > 0);
    const field = selector ? document.querySelector(selector) : fields.find(el => !search || describe(el).some(t => t.includes(search)));
    if (!field) return 'No matching input found';
    field.focus();
    const setter = Object.getOwnPropertyDescriptor(Object.getPrototypeOf(field), 'value').set;
    setter.call(field, {escape_js_string(value)});
    field.dispatchEvent(new Event('input', {{bubbles: true}}));
    field.dispatchEvent(new Event('change', {{bubbles: true}}));
    return 'Filled input: ' + (field.name || field.id || field.placeholder || field.tagName);
  }} catch (e) {{
    return 'Error filling input: ' + e.message;
  }}
}})()"""


def _select_option(args: Any) -> str:
    value = _arg(args, "value")
    text = _arg(args, "text")
    if not value and not text:
        raise CommandArgumentError('Missing option. Use: {"value": "..."} or {"text": "..."}')
    selector = _arg(args, "selector")
    selector = _checked_selector(selector) if selector else ""
    return f"""(function() {{
  const value = {escape_js_string(value)};
  const text = {escape_js_string(text.strip())};
  const selector = {escape_js_string(selector)};
  const selects = selector ? [document.querySelector(selector)] : Array.from(document.querySelectorAll('select'));
  for (const select of selects) {{
    if (!select || !select.options) continue;
    const option = Array.from(select.options).find(o => (value && o.value === value) || (text && o.text.trim() === text));
    if (option) {{
      select.value = option.value;
      select.dispatchEvent(new Event('change', {{bubbles: true}}));
      return 'Selected option: ' + option.text.trim();
    }}
  }}
  return 'Option not found';
}})()"""


def _get_page_structure(args: Any) -> str:
    return """(function() {
  const visible = el => { const r = el.getBoundingClientRect(); return r.width > 0 && r.height > 0; };
  const text = el => (el.textContent || el.value || '').trim().substring(0, 50);
  const pick = (sel, map) => Array.from(document.querySelectorAll(sel)).filter(visible).slice(0, 20).map(map);
  return {
    title: document.title,
    url: window.location.href,
    buttons: pick('button, [role="button"], input[type="submit"]', el => ({text: text(el), id: el.id, disabled: !!el.disabled})),
    inputs: pick('input, textarea, select', el => ({type: el.type || el.tagName.toLowerCase(), name: el.name, id: el.id, placeholder: el.placeholder || '', required: !!el.required})),
    links: pick('a[href]', el => ({text: text(el), href: el.getAttribute('href')})),
    headings: pick('h1, h2, h3', el => ({level: el.tagName, text: text(el)})),
    formCount: document.forms.length
  };
})()"""


def _find_elements(args: Any) -> str:
    return """(function() {
  return Array.from(document.querySelectorAll('button, a[href], input, textarea, select, [role="button"], [tabindex]'))
    .filter(el => { const r = el.getBoundingClientRect(); return r.width > 0 && r.height > 0; })
    .slice(0, 50)
    .map(el => ({
      tag: el.tagName.toLowerCase(),
      text: (el.textContent || el.value || el.getAttribute('aria-label') || '').trim().substring(0, 50),
      id: el.id || null,
      type: el.type || null,
      selector: el.id ? '#' + CSS.escape(el.id) : el.tagName.toLowerCase(),
      disabled: !!el.disabled
    }));
})()"""


def _verify_form_state(args: Any) -> str:
    return """(function() {
  const forms = Array.from(document.forms).map(form => ({
    id: form.id,
    action: form.getAttribute('action'),
    method: form.method,
    isValid: form.checkValidity(),
    inputs: Array.from(form.elements).filter(el => el.name || el.id).map(el => ({
      name: el.name,
      type: el.type,
      value: el.type === 'password' ? '***' : el.value,
      required: !!el.required,
      valid: el.validity ? el.validity.valid : null
    }))
  }));
  return {forms: forms, formCount: forms.length};
})()"""


def _console_log(args: Any) -> str:
    message = _arg(args, "message") or DEFAULT_CONSOLE_MESSAGE
    return f"console.log('electron-pilot:', {escape_js_string(message)}); 'Console message sent'"


def _eval(args: Any) -> str:
    body = wrap_body(get_eval_code(args))
    return f"""(function() {{
  try {{
    const result = (function() {{
{body}
    }})();
    return {{success: true, error: null, result: result === undefined ? null : result}};
  }} catch (error) {{
    return {{success: false, error: 'JavaScript error: ' + error.message, result: null}};
  }}
}})()"""


COMMAND_BUILDERS: dict[str, Callable[[Any], str]] = {
    "get_title": _get_title,
    "get_url": _get_url,
    "get_body_text": _get_body_text,
    "click_button": _click_button,
    "click_by_text": _click_by_text,
    "click_by_selector": _click_by_selector,
    "send_keyboard_shortcut": _send_keyboard_shortcut,
    "navigate_to_hash": _navigate_to_hash,
    "fill_input": _fill_input,
    "select_option": _select_option,
    "get_page_structure": _get_page_structure,
    "find_elements": _find_elements,
    "verify_form_state": _verify_form_state,
    "console_log": _console_log,
    EVAL_COMMAND: _eval,
}


def build_expression(command: str, args: Any = None) -> str:
    """Build the page expression for an interaction verb.

    Args:
        command: Verb name (case-insensitive).
        args: Verb arguments; a bare string is accepted as eval code.

    Raises:
        CommandArgumentError: On an unknown verb or unusable arguments.
    """
    builder = COMMAND_BUILDERS.get(command.strip().lower())
    if builder is None:
        raise CommandArgumentError(
            f"Unknown command: {command}. Available: {', '.join(sorted(COMMAND_BUILDERS))}"
        )
    return builder(args)
