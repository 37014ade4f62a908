"""Page-side functions shared by the direct and scripted automation modes.

Each snippet is a JavaScript arrow function taking one plain object
argument, so it can be handed to Playwright's ``page.evaluate(fn, arg)``
as-is or wrapped into a Runtime.evaluate expression by ``call_expression``.
Functions that target an element return ``{missing: true}`` when the
selector matches nothing.
"""

from __future__ import annotations

import json

_IS_VISIBLE = """
  const isVisible = (el) => {
    if (!el || !el.isConnected) return false;
    const style = window.getComputedStyle(el);
    if (style.visibility === 'hidden' || style.display === 'none') return false;
    return !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length);
  };
"""


def _fn(body: str, uses_visible: bool = False) -> str:
    prelude = _IS_VISIBLE if uses_visible else ""
    return "(arg) => {" + prelude + body + "}"


def call_expression(fn: str, arg: dict | None = None) -> str:
    """A Runtime.evaluate expression invoking ``fn`` with ``arg``."""
    return f"({fn})({json.dumps(arg or {})})"


LOCATION = _fn("""
  return {url: window.location.href, title: document.title};
""")

ELEMENT_CENTER = _fn("""
  const el = document.querySelector(arg.selector);
  if (!el) return {missing: true};
  el.scrollIntoView({block: 'center', inline: 'center'});
  const r = el.getBoundingClientRect();
  return {x: r.left + r.width / 2, y: r.top + r.height / 2, width: r.width, height: r.height};
""")

ELEMENT_CLIP = _fn("""
  const el = document.querySelector(arg.selector);
  if (!el) return {missing: true};
  el.scrollIntoView({block: 'nearest'});
  const r = el.getBoundingClientRect();
  return {x: r.left + window.scrollX, y: r.top + window.scrollY, width: r.width, height: r.height};
""")

PROBE = _fn("""
  const el = document.querySelector(arg.selector);
  return {exists: el !== null, visible: isVisible(el)};
""", uses_visible=True)

TEXT_PRESENT = _fn("""
  if (arg.selector) {
    return Array.from(document.querySelectorAll(arg.selector))
      .some((el) => isVisible(el) && (el.innerText || el.textContent || '').includes(arg.text));
  }
  const body = document.body;
  return !!body && (body.innerText || body.textContent || '').includes(arg.text);
""", uses_visible=True)

FOCUS = _fn("""
  const el = document.querySelector(arg.selector);
  if (!el) return {missing: true};
  el.focus();
  if (arg.clear) {
    if ('value' in el) {
      el.value = '';
      el.dispatchEvent(new Event('input', {bubbles: true}));
    } else if (el.isContentEditable) {
      el.textContent = '';
    }
  }
  return {focused: document.activeElement === el};
""")

FILL = _fn("""
  const el = document.querySelector(arg.selector);
  if (!el) return {missing: true};
  el.focus();
  if (el.isContentEditable) {
    el.textContent = arg.value;
  } else {
    const proto = el instanceof HTMLTextAreaElement ? HTMLTextAreaElement.prototype
      : el instanceof HTMLSelectElement ? HTMLSelectElement.prototype
      : HTMLInputElement.prototype;
    const setter = Object.getOwnPropertyDescriptor(proto, 'value');
    if (setter && setter.set) setter.set.call(el, arg.value); else el.value = arg.value;
  }
  el.dispatchEvent(new Event('input', {bubbles: true}));
  el.dispatchEvent(new Event('change', {bubbles: true}));
  return {value: 'value' in el ? el.value : el.textContent};
""")

SELECT_OPTION = _fn("""
  const el = document.querySelector(arg.selector);
  if (!el) return {missing: true};
  if (!(el instanceof HTMLSelectElement)) return {error: 'Element is not a <select>: ' + arg.selector};
  const options = Array.from(el.options);
  const wanted = (o, i) =>
    (arg.values && arg.values.includes(o.value)) ||
    (arg.labels && arg.labels.includes(o.label.trim())) ||
    (arg.indexes && arg.indexes.includes(i));
  const matched = options.filter(wanted);
  if (!matched.length) return {error: 'No matching option in ' + arg.selector};
  options.forEach((o, i) => { o.selected = el.multiple ? wanted(o, i) : o === matched[0]; });
  el.dispatchEvent(new Event('input', {bubbles: true}));
  el.dispatchEvent(new Event('change', {bubbles: true}));
  return {selected: options.filter((o) => o.selected).map((o) => o.value)};
""")

GET_TEXT = _fn("""
  const el = document.querySelector(arg.selector);
  if (!el) return {missing: true};
  const kind = arg.kind || 'textContent';
  return {value: kind === 'innerHTML' ? el.innerHTML : kind === 'innerText' ? el.innerText : el.textContent};
""")

GET_ATTRIBUTE = _fn("""
  const el = document.querySelector(arg.selector);
  if (!el) return {missing: true};
  return {value: el.getAttribute(arg.attribute)};
""")

GET_CONTENT = _fn("""
  let content;
  if (arg.selector) {
    const el = document.querySelector(arg.selector);
    if (!el) return {missing: true};
    content = arg.textOnly ? el.textContent : el.innerHTML;
  } else if (arg.textOnly) {
    content = document.body ? document.body.textContent : '';
  } else {
    const doctype = document.doctype ? new XMLSerializer().serializeToString(document.doctype) : '';
    content = doctype + document.documentElement.outerHTML;
  }
  return {url: window.location.href, title: document.title, content: content || ''};
""")

FIND_ELEMENTS = _fn("""
  const all = Array.from(document.querySelectorAll(arg.selector));
  const elements = all.slice(0, arg.limit).map((el, index) => {
    const info = {index, tagName: el.tagName.toLowerCase(), isVisible: isVisible(el), isEnabled: !el.disabled};
    if (arg.includeText) {
      info.textContent = el.textContent;
      info.innerText = el.innerText;
    }
    if (arg.includeAttributes) {
      info.attributes = {};
      for (const attr of el.attributes) info.attributes[attr.name] = attr.value;
    }
    return info;
  });
  return {totalFound: all.length, elements};
""", uses_visible=True)

CHECK_ELEMENT = _fn("""
  const el = document.querySelector(arg.selector);
  if (!el) return {missing: true};
  const editable = el.isContentEditable ||
    ((el instanceof HTMLInputElement || el instanceof HTMLTextAreaElement) && !el.readOnly && !el.disabled);
  const checked = !!el.checked || el.getAttribute('aria-checked') === 'true';
  const states = {
    visible: isVisible(el), hidden: !isVisible(el),
    enabled: !el.disabled, disabled: !!el.disabled,
    checked: checked, unchecked: !checked,
    editable: editable, readonly: !editable,
  };
  const out = {};
  for (const name of arg.checks) out[name] = states[name];
  return {checks: out};
""", uses_visible=True)

SCROLL = _fn("""
  const opts = {behavior: arg.behavior || 'auto'};
  if (arg.x !== null && arg.x !== undefined) opts.left = arg.x;
  if (arg.y !== null && arg.y !== undefined) opts.top = arg.y;
  if (arg.selector) {
    const el = document.querySelector(arg.selector);
    if (!el) return {missing: true};
    if (opts.left === undefined && opts.top === undefined) {
      el.scrollIntoView({block: 'center', behavior: opts.behavior});
      return {x: window.scrollX, y: window.scrollY};
    }
    el.scrollTo(opts);
    return {x: el.scrollLeft, y: el.scrollTop};
  }
  window.scrollTo(opts);
  return {x: window.scrollX, y: window.scrollY};
""")

PAGE_INFO = _fn("""
  const info = {url: window.location.href, title: document.title};
  if (arg.includeMetadata) {
    const meta = {};
    document.querySelectorAll('meta').forEach((tag) => {
      const name = tag.getAttribute('name') || tag.getAttribute('property');
      const content = tag.getAttribute('content');
      if (name && content) meta[name] = content;
    });
    meta.lang = document.documentElement.lang;
    meta.charset = document.characterSet;
    meta.readyState = document.readyState;
    info.metadata = meta;
  }
  if (arg.includeViewport) {
    info.viewport = {
      width: window.innerWidth, height: window.innerHeight,
      devicePixelRatio: window.devicePixelRatio,
      scrollX: window.scrollX, scrollY: window.scrollY,
      scrollWidth: document.documentElement.scrollWidth,
      scrollHeight: document.documentElement.scrollHeight,
    };
  }
  if (arg.includePerformance) {
    const nav = performance.getEntriesByType('navigation')[0];
    const paint = (name) => (performance.getEntriesByName(name)[0] || {}).startTime || null;
    info.performance = {
      loadTime: nav ? nav.loadEventEnd - nav.loadEventStart : null,
      domContentLoaded: nav ? nav.domContentLoadedEventEnd - nav.domContentLoadedEventStart : null,
      firstPaint: paint('first-paint'),
      firstContentfulPaint: paint('first-contentful-paint'),
    };
  }
  return info;
""")
