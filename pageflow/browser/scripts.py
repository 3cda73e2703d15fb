"""Page-side scripts evaluated through ``SessionDriver.evaluate``.

Each script is the source of a JavaScript function; drivers call it with the
positional arguments passed to ``evaluate``.
"""

from __future__ import annotations

# Observes the document for ``windowMs`` and reports what moved. Attribute churn
# on ``style``/``class`` and mutations on hidden nodes are not significant.
STABILITY_PROBE = """
async (windowMs, layoutMs, checkAnimations) => {
  const report = {mutations: 0, shifts: 0, animations: 0, pendingImages: 0};
  const root = document.body || document.documentElement;
  if (!root) return report;
  const observer = new MutationObserver((records) => {
    for (const record of records) {
      if (record.type === 'attributes' &&
          (record.attributeName === 'style' || record.attributeName === 'class')) continue;
      const target = record.target.nodeType === 1 ? record.target : record.target.parentElement;
      if (target && target !== document.body && target.offsetParent === null) continue;
      report.mutations++;
    }
  });
  observer.observe(root, {childList: true, subtree: true, attributes: true, characterData: true});
  let layoutObserver = null;
  if (layoutMs > 0 && typeof PerformanceObserver !== 'undefined') {
    try {
      layoutObserver = new PerformanceObserver((list) => {
        for (const entry of list.getEntries()) {
          if (!entry.hadRecentInput && entry.value > 0.05) report.shifts++;
        }
      });
      layoutObserver.observe({type: 'layout-shift', buffered: false});
    } catch (_) {
      layoutObserver = null;
    }
  }
  await new Promise((resolve) => setTimeout(resolve, Math.max(windowMs, layoutMs)));
  observer.disconnect();
  if (layoutObserver) layoutObserver.disconnect();
  if (checkAnimations) {
    if (typeof document.getAnimations === 'function') {
      report.animations = document.getAnimations().filter((a) => a.playState === 'running').length;
    }
    report.pendingImages = Array.from(document.images).filter((img) => {
      const rect = img.getBoundingClientRect();
      return !img.complete && rect.top < window.innerHeight && rect.left < window.innerWidth;
    }).length;
  }
  return report;
}
"""

CLEAR_VALUE = """
(selector) => {
  const el = document.querySelector(selector);
  if (!el) return false;
  if ('value' in el) {
    el.value = '';
    el.dispatchEvent(new Event('input', {bubbles: true}));
  } else if (el.isContentEditable) {
    el.textContent = '';
  }
  return true;
}
"""

CURRENT_ORIGIN = "() => String(window.location.origin || '')"

READ_STORAGE = """
() => {
  const dump = (store) => {
    const out = {};
    try {
      for (let i = 0; i < store.length; i++) {
        const key = store.key(i);
        out[key] = store.getItem(key);
      }
    } catch (_) {}
    return out;
  };
  return {
    origin: String(window.location.origin || ''),
    localStorage: dump(window.localStorage),
    sessionStorage: dump(window.sessionStorage),
  };
}
"""

WRITE_STORAGE = """
(origin, local, session) => {
  if (String(window.location.origin) !== origin) return false;
  for (const [key, value] of Object.entries(local || {})) window.localStorage.setItem(key, value);
  for (const [key, value] of Object.entries(session || {})) window.sessionStorage.setItem(key, value);
  return true;
}
"""

CURRENT_URL = "() => String(window.location.href || '')"

READY_STATE = """
() => ({
  readyState: String(document.readyState || 'loading'),
  hasBody: Boolean(document.body),
  resources: typeof performance !== 'undefined' && performance.getEntriesByType
    ? performance.getEntriesByType('resource').length
    : 0,
})
"""

QUERY_ELEMENTS = """
(selector) => {
  let nodes;
  try {
    nodes = Array.from(document.querySelectorAll(selector));
  } catch (err) {
    return {error: String(err && err.message || err)};
  }
  return {
    elements: nodes.map((node) => ({
      tag: String(node.tagName || '').toLowerCase(),
      outerHTML: String(node.outerHTML || ''),
      text: String(node.innerText || node.textContent || '').trim(),
    })),
  };
}
"""

CLICK_ELEMENT = """
(selector) => {
  let el = null;
  try { el = document.querySelector(selector); } catch (_) { return {ok: false, reason: 'invalid selector'}; }
  if (!el) return {ok: false, reason: 'not found'};
  el.scrollIntoView({block: 'center', inline: 'center'});
  el.click();
  return {ok: true, tag: String(el.tagName || '').toLowerCase()};
}
"""

FOCUS_ELEMENT = """
(selector) => {
  let el = null;
  try { el = document.querySelector(selector); } catch (_) { return false; }
  if (!el) return false;
  el.focus();
  return true;
}
"""

# Appends ``value`` one character at a time so key-driven widgets see every input event.
TYPE_TEXT = """
async (selector, value, delayMs) => {
  const el = document.querySelector(selector);
  if (!el) return false;
  el.focus();
  const editable = !('value' in el) && el.isContentEditable;
  for (const ch of Array.from(value)) {
    el.dispatchEvent(new KeyboardEvent('keydown', {key: ch, bubbles: true}));
    if (editable) el.textContent += ch; else el.value += ch;
    el.dispatchEvent(new Event('input', {bubbles: true}));
    el.dispatchEvent(new KeyboardEvent('keyup', {key: ch, bubbles: true}));
    if (delayMs > 0) await new Promise((resolve) => setTimeout(resolve, delayMs));
  }
  el.dispatchEvent(new Event('change', {bubbles: true}));
  return true;
}
"""

READ_COOKIES = """
() => ({
  cookie: String(document.cookie || ''),
  hostname: String(window.location.hostname || ''),
  secure: window.location.protocol === 'https:',
})
"""

WRITE_COOKIES = """
(cookies) => {
  let written = 0;
  for (const c of cookies || []) {
    const host = String(window.location.hostname || '');
    const domain = String(c.domain || '').replace(/^\\./, '');
    if (domain && host !== domain && !host.endsWith('.' + domain)) continue;
    let line = `${c.name}=${c.value}; path=${c.path || '/'}`;
    if (c.expires && c.expires > 0) line += `; expires=${new Date(c.expires * 1000).toUTCString()}`;
    if (c.sameSite) line += `; samesite=${c.sameSite}`;
    if (c.secure) line += '; secure';
    document.cookie = line;
    written++;
  }
  return written;
}
"""
