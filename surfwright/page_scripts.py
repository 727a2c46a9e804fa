"""Page-side JavaScript used by the CDP Ops binding.

Every script is a function literal taking one JSON options object; `call_js`
renders the invocation expression sent to `Runtime.evaluate`.
"""

from __future__ import annotations

import json
from typing import Any

# Shared helpers: frame-aware roots, visibility, element text, text/selector matching.
PAGE_HELPERS_JS = r"""
const __swRoots = (frameScope) => {
  const roots = [document];
  if (frameScope !== 'all') return roots;
  for (const frame of document.querySelectorAll('iframe, frame')) {
    try {
      const doc = frame.contentDocument || (frame.contentWindow && frame.contentWindow.document);
      if (doc) roots.push(doc);
    } catch (e) {
      // cross-origin frame
    }
  }
  return roots;
};
const __swVisible = (el) => {
  if (!el || !el.getBoundingClientRect) return false;
  const rect = el.getBoundingClientRect();
  if (rect.width <= 0 || rect.height <= 0) return false;
  const style = (el.ownerDocument.defaultView || window).getComputedStyle(el);
  return style.visibility !== 'hidden' && style.display !== 'none' && style.opacity !== '0';
};
const __swText = (el) => {
  const raw = el.innerText || el.value || el.getAttribute('aria-label')
    || el.getAttribute('title') || el.textContent || '';
  return String(raw).replace(/\s+/g, ' ').trim();
};
const __swQuery = (opts) => {
  const out = [];
  for (const root of __swRoots(opts.frameScope)) {
    let nodes;
    if (opts.selector) {
      nodes = Array.from(root.querySelectorAll(opts.selector));
    } else {
      const interactive = 'a, button, input, select, textarea, summary, label, [role], [onclick], [tabindex], '
        + 'h1, h2, h3, h4, li, td, span, p, div';
      const needle = String(opts.text || '').toLowerCase();
      nodes = Array.from(root.querySelectorAll(interactive)).filter((el) => {
        const text = __swText(el).toLowerCase();
        if (!needle || !text.includes(needle)) return false;
        // keep the innermost element carrying the text
        return !Array.from(el.children).some((child) => __swText(child).toLowerCase().includes(needle));
      });
    }
    for (const el of nodes) {
      if (opts.contains && !__swText(el).toLowerCase().includes(String(opts.contains).toLowerCase())) continue;
      if (opts.visibleOnly && !__swVisible(el)) continue;
      out.push(el);
    }
  }
  if (opts.within) {
    const scopes = Array.from(document.querySelectorAll(opts.within));
    return out.filter((el) => scopes.some((scope) => scope.contains(el)));
  }
  return out;
};
const __swDescribe = (el, index) => ({
  index,
  tag: el.tagName.toLowerCase(),
  id: el.id || null,
  role: el.getAttribute('role'),
  text: __swText(el).slice(0, 160),
  href: el.getAttribute('href'),
  visible: __swVisible(el),
});
"""


def _wrap(body: str) -> str:
    return "(async (opts) => {\n" + PAGE_HELPERS_JS + body + "\n})"


PAGE_STATE_JS = _wrap(
    r"""
  const probe = {
    url: location.href,
    title: document.title,
    readyState: document.readyState,
    resourceCount: performance.getEntriesByType('resource').length,
  };
  if (opts.text) probe.textFound = (document.body ? document.body.innerText : '').includes(opts.text);
  if (opts.selector) probe.selectorFound = !!document.querySelector(opts.selector);
  return probe;
"""
)

SNAPSHOT_JS = _wrap(
    r"""
  const scope = opts.selector ? document.querySelector(opts.selector) : document.body;
  if (!scope) return { found: false, url: location.href, title: document.title };
  const pick = (sel, limit) => Array.from(scope.querySelectorAll(sel))
    .filter((el) => !opts.visibleOnly || __swVisible(el))
    .slice(0, limit)
    .map((el, i) => __swDescribe(el, i));
  return {
    found: true,
    url: location.href,
    title: document.title,
    readyState: document.readyState,
    headings: pick('h1, h2, h3', 20),
    buttons: pick('button, [role=button], input[type=submit]', 30),
    links: pick('a[href]', 30),
    inputs: pick('input, textarea, select', 30),
    textPreview: (scope.innerText || '').replace(/\s+/g, ' ').trim().slice(0, 1200),
  };
"""
)

FIND_JS = _wrap(
    r"""
  const matches = __swQuery(opts);
  const limit = opts.first ? 1 : (opts.limit || 20);
  return { count: matches.length, matches: matches.slice(0, limit).map((el, i) => __swDescribe(el, i)) };
"""
)

COUNT_JS = _wrap(
    r"""
  return { count: __swQuery(opts).length };
"""
)

SCROLL_JS = _wrap(
    r"""
  const el = document.scrollingElement || document.documentElement;
  if (opts.mode === 'relative') window.scrollBy(0, opts.y); else window.scrollTo(0, opts.y);
  return { scrollY: Math.round(window.scrollY), scrollHeight: el.scrollHeight, viewportHeight: window.innerHeight };
"""
)

CLICK_JS = _wrap(
    r"""
  const matches = __swQuery(opts);
  const index = typeof opts.index === 'number' ? opts.index : 0;
  const el = matches[index];
  if (!el) return { clicked: false, matchCount: matches.length };
  el.scrollIntoView({ block: 'center', inline: 'center' });
  el.click();
  return { clicked: true, matchCount: matches.length, element: __swDescribe(el, index) };
"""
)

FILL_JS = _wrap(
    r"""
  const matches = __swQuery(opts);
  const el = matches[0];
  if (!el) return { filled: false, matchCount: matches.length };
  el.focus();
  const proto = el.tagName === 'TEXTAREA' ? HTMLTextAreaElement.prototype
    : el.tagName === 'SELECT' ? HTMLSelectElement.prototype : HTMLInputElement.prototype;
  const setter = Object.getOwnPropertyDescriptor(proto, 'value');
  if (setter && setter.set) setter.set.call(el, opts.value); else el.value = opts.value;
  for (const name of opts.events) {
    el.dispatchEvent(new Event(name, { bubbles: true }));
  }
  return {
    filled: true, matchCount: matches.length, element: __swDescribe(el, 0), valueLength: String(el.value).length,
  };
"""
)

READ_JS = _wrap(
    r"""
  const roots = __swRoots(opts.frameScope);
  const parts = [];
  for (const root of roots) {
    const nodes = opts.selector ? Array.from(root.querySelectorAll(opts.selector)) : [root.body].filter(Boolean);
    for (const el of nodes) {
      if (opts.visibleOnly && !__swVisible(el)) continue;
      parts.push((el.innerText || el.textContent || '').replace(/\s+/g, ' ').trim());
    }
  }
  return { url: location.href, title: document.title, matched: parts.length, text: parts.join('\n') };
"""
)

EXTRACT_JS = _wrap(
    r"""
  const scope = opts.selector ? document.querySelector(opts.selector) : document;
  if (!scope) return { kind: opts.kind, items: [] };
  const keep = (el) => !opts.visibleOnly || __swVisible(el);
  let items = [];
  if (opts.kind === 'headings') {
    items = Array.from(scope.querySelectorAll('h1, h2, h3, h4')).filter(keep)
      .map((el) => ({ level: Number(el.tagName.slice(1)), text: __swText(el) }));
  } else if (opts.kind === 'images') {
    items = Array.from(scope.querySelectorAll('img[src]')).filter(keep)
      .map((el) => ({ src: el.currentSrc || el.src, alt: el.getAttribute('alt') || '' }));
  } else if (opts.kind === 'tables') {
    items = Array.from(scope.querySelectorAll('table')).filter(keep).map((table) =>
      Array.from(table.rows).map((row) => Array.from(row.cells).map((cell) => __swText(cell))));
  } else if (opts.kind === 'text') {
    items = Array.from(scope.querySelectorAll('p, li, blockquote')).filter(keep)
      .map((el) => __swText(el)).filter((text) => text.length > 0);
  } else {
    items = Array.from(scope.querySelectorAll('a[href]')).filter(keep)
      .map((el) => ({ text: __swText(el), href: el.href }));
  }
  return { kind: opts.kind, total: items.length, items: items.slice(0, opts.limit) };
"""
)


def call_js(script: str, options: dict[str, Any]) -> str:
    return f"{script}({json.dumps(options, ensure_ascii=False)})"


def eval_expression_js(expression: str, arg_json: str | None) -> str:
    """Evaluate a user expression; with `arg_json` it is called as `(arg) => expression`."""
    if arg_json is None:
        return f"(async () => ({expression}))()"
    return f"(async (arg) => ({expression}))({arg_json})"
