from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .models import DocumentState

if TYPE_CHECKING:
    from playwright.sync_api import Page

# Inlined into the injected capture script.
SUMMARIZE_FUNCTION = """
function __flowrecorderSummarize(el) {
  const clean = (value, limit) => (value || '').trim().replace(/\\s+/g, ' ').slice(0, limit || 200);
  const attrs = {};
  for (const attr of el.attributes) {
    attrs[attr.name] = attr.value;
  }

  const tag = el.tagName.toLowerCase();
  const explicitRole = el.getAttribute('role');
  let inferredRole = null;
  if (!explicitRole) {
    if (tag === 'button') inferredRole = 'button';
    if (tag === 'a' && el.getAttribute('href')) inferredRole = 'link';
    if (tag === 'select') inferredRole = 'combobox';
    if (tag === 'textarea') inferredRole = 'textbox';
    if (tag === 'input') {
      const inputType = (el.getAttribute('type') || 'text').toLowerCase();
      if (['button', 'submit', 'reset'].includes(inputType)) inferredRole = 'button';
      if (inputType === 'checkbox') inferredRole = 'checkbox';
      if (inputType === 'radio') inferredRole = 'radio';
      if (['search', 'text', 'email', 'password', 'url', 'tel', 'number'].includes(inputType)) inferredRole = 'textbox';
    }
  }

  const labels = el.labels ? Array.from(el.labels) : [];
  const labelText = labels.length ? clean(labels[0].innerText || labels[0].textContent) : '';

  const labelledBy = (el.getAttribute('aria-labelledby') || '').trim();
  let labelledByText = '';
  if (labelledBy) {
    labelledByText = labelledBy
      .split(/\\s+/)
      .map((id) => id && document.getElementById(id))
      .filter(Boolean)
      .map((node) => clean(node.innerText || node.textContent))
      .filter(Boolean)
      .join(' ')
      .slice(0, 200);
  }

  const ancestry = [];
  let current = el;
  while (current && current.nodeType === Node.ELEMENT_NODE && ancestry.length < 14) {
    let nth = 1;
    let sibling = current;
    while ((sibling = sibling.previousElementSibling)) {
      if (sibling.tagName === current.tagName) nth += 1;
    }
    ancestry.push({
      tag: (current.tagName || '').toLowerCase(),
      id: current.id || '',
      role: current.getAttribute('role') || '',
      class: typeof current.className === 'string' ? current.className : '',
      nth: String(nth),
      controlname: current.getAttribute('data-dyn-controlname') || '',
      dynrole: current.getAttribute('data-dyn-role') || '',
    });
    current = current.parentElement;
  }

  const rect = el.getBoundingClientRect();
  return {
    tag,
    id: el.id || null,
    classes: Array.from(el.classList || []),
    name: el.getAttribute('name') || null,
    role: explicitRole || inferredRole,
    text: clean(el.innerText || el.textContent) || null,
    placeholder: el.getAttribute('placeholder') || null,
    aria_label: el.getAttribute('aria-label') || null,
    label_text: labelText || null,
    title: el.getAttribute('title') || null,
    aria_labelledby_text: labelledByText || null,
    attributes: attrs,
    ancestry,
    rect: { x: rect.x, y: rect.y },
  };
}
"""

DOCUMENT_STATE_FUNCTION = """
function __flowrecorderDocumentState() {
  const captionNode = document.querySelector(
    'div[aria-label*="Page title"], [data-dyn-role="pageTitle"], .page-title, h1'
  );
  const markers = new Set();
  for (const node of document.querySelectorAll('[data-dyn-role]')) {
    const role = node.getAttribute('data-dyn-role');
    if (role) markers.add(role);
    if (markers.size >= 64) break;
  }
  let company = null;
  try {
    company = new URL(location.href).searchParams.get('cmp');
  } catch (err) {
    company = null;
  }
  return {
    url: location.href || '',
    title: document.title || '',
    caption: captionNode ? (captionNode.innerText || captionNode.textContent || '').trim().replace(/\\s+/g, ' ') : null,
    markers: Array.from(markers),
    company,
  };
}
"""


def read_document_state(page: Page) -> DocumentState:
    try:
        payload: dict[str, Any] = page.evaluate(
            f"() => {{ {DOCUMENT_STATE_FUNCTION}\n return __flowrecorderDocumentState(); }}"
        )
    except Exception:
        return DocumentState(url=page.url)
    return DocumentState.from_dict(payload or {"url": page.url})
