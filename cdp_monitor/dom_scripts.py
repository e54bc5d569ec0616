"""
Remote expressions evaluated in the assistant's chat panel.

Detection expressions only collect raw, JSON-serializable facts about the DOM
(button labels, container text, candidate nodes). Every decision about what
those facts mean lives in Python (see the detector modules and
response_extractor). Action expressions (click, inject) have to run remotely.
"""

import json

PANEL_SELECTOR = ".antigravity-agent-side-panel"
CONTEXT_URL_KEYWORD = "cascade-panel"

# Response candidate selectors, highest score first.
RESPONSE_SELECTORS = [
    (".rendered-markdown", 10),
    (".leading-relaxed.select-text", 9),
    (".flex.flex-col.gap-y-3", 8),
    ('[data-message-author-role="assistant"]', 7),
    ('[data-message-role="assistant"]', 6),
    ('[class*="assistant-message"]', 5),
    ('[class*="message-content"]', 4),
    ('[class*="markdown-body"]', 3),
    (".prose", 2),
]

_EXCLUDED_CONTAINERS = 'details, [class*="feedback"], footer, .notify-user-container, [role="dialog"]'


def _js(value) -> str:
    return json.dumps(value, ensure_ascii=False)


# Visible buttons grouped by their nearest dialog-like container.
APPROVAL_SNAPSHOT = """(() => {
    const visible = (el) => el && el.offsetParent !== null;
    const containerOf = (btn) => btn.closest('[role="dialog"], .modal, .dialog, .approval-container, .permission-dialog')
        || (btn.parentElement && btn.parentElement.parentElement)
        || btn.parentElement
        || document.body;
    const containers = [];
    const buttons = [];
    for (const btn of Array.from(document.querySelectorAll('button'))) {
        if (!visible(btn)) continue;
        const container = containerOf(btn);
        let index = containers.findIndex((c) => c.node === container);
        if (index === -1) {
            const descEl = container.querySelector('p, .description, [data-testid="description"]');
            const clone = container.cloneNode(true);
            clone.querySelectorAll('button').forEach((b) => b.remove());
            containers.push({
                node: container,
                description: descEl ? (descEl.textContent || '').trim() : '',
                text: (clone.textContent || '').trim(),
            });
            index = containers.length - 1;
        }
        buttons.push({
            text: (btn.textContent || '').trim(),
            aria: btn.getAttribute('aria-label') || '',
            container: index,
        });
    }
    return {
        buttons,
        containers: containers.map((c) => ({ description: c.description, text: c.text })),
    };
})()"""

EXPAND_ALWAYS_ALLOW_MENU = """(() => {
    const ALLOW_ONCE = ['allow once', 'allow one time', '今回のみ許可', '1回のみ許可', '一度許可'];
    const ALWAYS_ALLOW = ['allow this conversation', 'allow this chat', 'always allow', '常に許可', 'この会話を許可'];
    const normalize = (text) => (text || '').toLowerCase().replace(/\\s+/g, ' ').trim();
    const visibleButtons = Array.from(document.querySelectorAll('button')).filter((b) => b.offsetParent !== null);

    if (visibleButtons.some((b) => ALWAYS_ALLOW.some((p) => normalize(b.textContent).includes(p)))) {
        return { ok: true, method: 'already-visible' };
    }
    const allowOnce = visibleButtons.find((b) => ALLOW_ONCE.some((p) => normalize(b.textContent).includes(p)));
    if (!allowOnce) return { ok: false, error: 'allow-once button not found' };

    const container = allowOnce.closest('[role="dialog"], .modal, .dialog, .approval-container, .permission-dialog')
        || (allowOnce.parentElement && allowOnce.parentElement.parentElement)
        || allowOnce.parentElement
        || document.body;
    const toggle = Array.from(container.querySelectorAll('button')).filter((b) => b.offsetParent !== null).find((b) => {
        if (b === allowOnce) return false;
        const popup = b.getAttribute('aria-haspopup');
        if (popup === 'menu' || popup === 'listbox') return true;
        if (normalize(b.textContent) === '') return true;
        return /menu|more|expand|options|dropdown|chevron|arrow/.test(normalize(b.getAttribute('aria-label')));
    });
    if (toggle) {
        toggle.click();
        return { ok: true, method: 'toggle-button' };
    }

    const rect = allowOnce.getBoundingClientRect();
    if (!rect || rect.width <= 0 || rect.height <= 0) return { ok: false, error: 'allow-once button rect unavailable' };
    const clientX = rect.right - Math.max(4, Math.min(12, rect.width * 0.15));
    const clientY = rect.top + rect.height / 2;
    for (const type of ['pointerdown', 'mousedown', 'mouseup', 'click']) {
        allowOnce.dispatchEvent(new MouseEvent(type, { bubbles: true, cancelable: true, view: window, clientX, clientY }));
    }
    return { ok: true, method: 'allow-once-right-edge' };
})()"""

PLANNING_SNAPSHOT = """(() => {
    const container = document.querySelector('.notify-user-container');
    if (!container) return null;
    const buttons = Array.from(container.querySelectorAll('button'))
        .filter((b) => b.offsetParent !== null)
        .map((b) => (b.textContent || '').trim());
    const titleEl = container.querySelector('span.inline-flex.break-all, .inline-flex.break-all');
    const summaries = Array.from(container.querySelectorAll('span.text-sm')).map((el) => (el.textContent || '').trim());
    const descEl = container.querySelector('.leading-relaxed.select-text');
    const parts = [];
    if (descEl) {
        const skip = new Set(['PRE', 'CODE', 'STYLE', 'SCRIPT']);
        const walk = (node) => {
            if (node.nodeType === 3) {
                const t = (node.textContent || '').trim();
                if (t) parts.push(t);
            } else if (node.nodeType === 1 && !skip.has(node.tagName)) {
                node.childNodes.forEach(walk);
            }
        };
        walk(descEl);
    }
    return {
        buttons,
        title: titleEl ? (titleEl.textContent || '').trim() : '',
        summaries,
        description: parts.join(' '),
    };
})()"""

PLAN_CONTENT = """(() => {
    const toMd = (root) => {
        const out = [];
        const visit = (node) => {
            if (node.nodeType === 3) { out.push(node.textContent || ''); return; }
            if (node.nodeType !== 1) return;
            const tag = node.tagName;
            const kids = () => node.childNodes.forEach(visit);
            if (/^H[1-4]$/.test(tag)) { out.push('\\n' + '#'.repeat(Number(tag[1])) + ' '); kids(); out.push('\\n'); return; }
            if (tag === 'STRONG' || tag === 'B') { out.push('**'); kids(); out.push('**'); return; }
            if (tag === 'EM' || tag === 'I') { out.push('*'); kids(); out.push('*'); return; }
            if (tag === 'PRE') { out.push('\\n```\\n' + (node.textContent || '') + '\\n```\\n'); return; }
            if (tag === 'CODE') { out.push('`' + (node.textContent || '') + '`'); return; }
            if (tag === 'LI') { out.push('\\n- '); kids(); return; }
            if (tag === 'BR') { out.push('\\n'); return; }
            if (tag === 'P') { out.push('\\n\\n'); kids(); out.push('\\n'); return; }
            if (tag === 'STYLE' || tag === 'SCRIPT') return;
            kids();
        };
        visit(root);
        return out.join('').replace(/\\n{3,}/g, '\\n\\n').trim();
    };
    const content = document.querySelector('div.relative.pl-4.pr-4.py-1, div.relative.pl-4.pr-4');
    const primary = content && content.querySelector('.leading-relaxed.select-text');
    if (primary) return toMd(primary);
    for (const el of Array.from(document.querySelectorAll('.leading-relaxed.select-text'))) {
        const md = toMd(el);
        if (md.length > 100) return md;
    }
    return null;
})()"""

ERROR_POPUP_SNAPSHOT = """(() => {
    let dialogs = Array.from(document.querySelectorAll('[role="dialog"], [role="alertdialog"], .modal, .dialog'))
        .filter((el) => el.offsetParent !== null || el.getAttribute('aria-modal') === 'true');
    if (dialogs.length === 0) {
        dialogs = Array.from(document.querySelectorAll('div[class*="fixed"], div[class*="absolute"]')).filter((el) => {
            const style = window.getComputedStyle(el);
            return (style.position === 'fixed' || style.position === 'absolute')
                && style.zIndex && parseInt(style.zIndex, 10) > 10
                && el.querySelector('button');
        });
    }
    return dialogs.map((dialog) => {
        const heading = dialog.querySelector('h1, h2, h3, h4, [class*="title"], [class*="heading"]');
        const textNodes = [];
        const walker = document.createTreeWalker(dialog, NodeFilter.SHOW_TEXT);
        let node;
        while ((node = walker.nextNode())) {
            const t = (node.textContent || '').trim();
            if (t) textNodes.push(t);
        }
        return {
            text: dialog.textContent || '',
            heading: heading ? (heading.textContent || '').trim() : '',
            textNodes,
            buttons: Array.from(dialog.querySelectorAll('button'))
                .filter((b) => b.offsetParent !== null)
                .map((b) => (b.textContent || '').trim()),
        };
    });
})()"""

READ_CLIPBOARD = """(async () => {
    try {
        const text = await navigator.clipboard.readText();
        return text || null;
    } catch (e) {
        return null;
    }
})()"""

USER_MESSAGE_SNAPSHOT = """(() => {
    const scope = document.querySelector('%s') || document;
    const direct = Array.from(scope.querySelectorAll('[class*="bg-gray-500/15"][class*="select-text"] .whitespace-pre-wrap'))
        .map((el) => (el.textContent || '').trim());
    if (direct.some((t) => t.length > 0)) return direct;
    return Array.from(scope.querySelectorAll('[class*="bg-gray-500/15"][class*="rounded-lg"][class*="select-text"]'))
        .filter((el) => !el.querySelector('[class*="bg-gray-500/15"][class*="select-text"]'))
        .map((el) => {
            const textEl = el.querySelector('.whitespace-pre-wrap') || el.querySelector('[style*="word-break"]');
            return ((textEl || el).textContent || '').trim();
        });
})()""" % PANEL_SELECTOR

STOP_BUTTON_SNAPSHOT = """(() => {
    const panel = document.querySelector('%s');
    const scopes = [panel, document].filter(Boolean);
    const tooltip = scopes.some((s) => s.querySelector('[data-tooltip-id="input-send-button-cancel-tooltip"]'));
    const labels = [];
    for (const scope of scopes) {
        for (const btn of Array.from(scope.querySelectorAll('button, [role="button"]'))) {
            labels.push([btn.textContent || '', btn.getAttribute('aria-label') || '', btn.getAttribute('title') || '']);
        }
    }
    return { tooltip, labels };
})()""" % PANEL_SELECTOR

CLICK_STOP_BUTTON = """(() => {
    const panel = document.querySelector('%s');
    const scopes = [panel, document].filter(Boolean);
    for (const scope of scopes) {
        const el = scope.querySelector('[data-tooltip-id="input-send-button-cancel-tooltip"]');
        if (el && typeof el.click === 'function') {
            el.click();
            return { ok: true, method: 'tooltip-id' };
        }
    }
    const normalize = (v) => (v || '').toLowerCase().replace(/\\s+/g, ' ').trim();
    const STOP = ['stop', 'stop generating', 'stop response', '停止', '生成を停止', '応答を停止'];
    for (const scope of scopes) {
        for (const btn of Array.from(scope.querySelectorAll('button, [role="button"]'))) {
            const labels = [btn.textContent, btn.getAttribute('aria-label'), btn.getAttribute('title')].map(normalize);
            if (labels.some((l) => STOP.includes(l)) && typeof btn.click === 'function') {
                btn.click();
                return { ok: true, method: 'text-fallback' };
            }
        }
    }
    return { ok: false, error: 'Stop button not found' };
})()""" % PANEL_SELECTOR

QUOTA_SNAPSHOT = """(() => {
    const scope = document.querySelector('%s') || document;
    const insideResponse = (node) => !!node.closest(
        '.rendered-markdown, .prose, pre, code, [data-message-author-role="assistant"], '
        + '[data-message-role="assistant"], [class*="message-content"]');
    const texts = (selector) => Array.from(scope.querySelectorAll(selector))
        .filter((el) => !insideResponse(el))
        .map((el) => (el.textContent || '').trim())
        .filter((t) => t.length > 0 && t.length <= 1000);
    return {
        headings: texts('h3 span, h3'),
        inline: texts('span'),
        alerts: texts('[role="alert"], [class*="error"], [class*="warning"], [class*="toast"], [class*="banner"], '
            + '[class*="notification"], [class*="alert"], [class*="quota"], [class*="rate-limit"]'),
    };
})()""" % PANEL_SELECTOR


def _candidates_expression(newest_first: bool) -> str:
    combined = ", ".join(selector for selector, _ in RESPONSE_SELECTORS)
    return """(() => {
    const panel = document.querySelector(%s);
    const scopes = [panel, document].filter(Boolean);
    const selectors = %s;
    const matchSelector = (node) => selectors.find((s) => node.matches(s)) || '';
    const seen = new Set();
    const results = [];
    let order = 0;
    for (const scope of scopes) {
        const nodes = Array.from(scope.querySelectorAll(%s));
        for (const node of nodes) {
            order += 1;
            if (seen.has(node)) continue;
            seen.add(node);
            results.push({
                selector: matchSelector(node),
                text: node.innerText || node.textContent || '',
                order: scope === panel ? order + 1000000 : order,
                excluded: !!node.closest(%s),
            });
        }
    }
    return %s;
})()""" % (
        _js(PANEL_SELECTOR),
        _js([selector for selector, _ in RESPONSE_SELECTORS]),
        _js(combined),
        _js(_EXCLUDED_CONTAINERS),
        "results.reverse()" if newest_first else "results",
    )


RESPONSE_CANDIDATES = _candidates_expression(newest_first=True)
PROCESS_LOG_CANDIDATES = _candidates_expression(newest_first=False)


# Text nodes of every chat message with the container facts needed to classify them.
RESPONSE_SEGMENTS = """(() => {
    const root = document.querySelector('%s') || document;
    const normalize = (value) => (value || '').replace(/\\r/g, '').replace(/\\s+/g, ' ').trim();
    const messages = Array.from(root.querySelectorAll(
        '[data-message-role], [data-message-author-role], article, [class*="message"]'));
    const segments = [];
    messages.forEach((message, index) => {
        const role = message.getAttribute('data-message-role')
            || message.getAttribute('data-message-author-role') || '';
        const nodes = message.querySelectorAll('details summary, details [class*="tool"], '
            + 'details [class*="thinking"], [class*="feedback"], footer button, p, li, pre');
        for (const node of (nodes.length > 0 ? Array.from(nodes) : [message])) {
            const text = normalize(node.innerText || node.textContent);
            if (!text) continue;
            segments.push({
                text,
                role,
                messageIndex: index,
                inDetails: !!node.closest('details'),
                inFeedback: !!node.closest('[class*="feedback"], [data-feedback], footer'),
                hint: [node.getAttribute('class'), node.getAttribute('data-testid'), node.getAttribute('data-role')]
                    .filter(Boolean).join(' '),
            });
        }
    });
    return { segments };
})()""" % PANEL_SELECTOR


def build_click_expression(button_text: str) -> str:
    """Build an expression that clicks the first visible button matching button_text."""
    return """(() => {
    const normalize = (text) => (text || '').toLowerCase().replace(/\\s+/g, ' ').trim();
    const wanted = normalize(%s);
    const target = Array.from(document.querySelectorAll('button')).find((btn) => {
        if (!btn.offsetParent) return false;
        const text = normalize(btn.textContent);
        const aria = normalize(btn.getAttribute('aria-label'));
        return text === wanted || aria === wanted || text.includes(wanted) || aria.includes(wanted);
    });
    if (!target) return { ok: false, error: 'Button not found: ' + %s };
    target.click();
    return { ok: true, method: 'click' };
})()""" % (_js(button_text), _js(button_text))


def build_inject_expression(text: str) -> str:
    """Build an expression that types text into the chat input and submits it."""
    safe_text = _js(text)
    return """(async () => {
    const SUBMIT_ICONS = ['lucide-arrow-right', 'lucide-arrow-up', 'lucide-send'];
    const isSubmit = (btn) => {
        if (btn.disabled || btn.offsetWidth === 0) return false;
        const svg = btn.querySelector('svg');
        if (svg) {
            const cls = (svg.getAttribute('class') || '') + ' ' + (btn.getAttribute('class') || '');
            if (SUBMIT_ICONS.some((c) => cls.includes(c))) return true;
        }
        const label = (btn.innerText || '').trim().toLowerCase();
        return label === 'send' || label === 'run';
    };
    const editors = Array.from(document.querySelectorAll('div[role="textbox"]:not(.xterm-helper-textarea)'))
        .filter((el) => el.offsetParent !== null);
    const editor = editors[editors.length - 1];
    if (!editor) return { ok: false, error: 'No editor found in this context' };
    editor.focus();
    const inserted = document.execCommand('insertText', false, %s);
    if (!inserted) {
        editor.textContent = %s;
        editor.dispatchEvent(new InputEvent('beforeinput', { bubbles: true, inputType: 'insertText', data: %s }));
        editor.dispatchEvent(new InputEvent('input', { bubbles: true, inputType: 'insertText', data: %s }));
    }
    editor.dispatchEvent(new Event('input', { bubbles: true }));
    await new Promise((r) => setTimeout(r, 200));
    const submit = Array.from(document.querySelectorAll('button')).find(isSubmit);
    if (submit) {
        submit.click();
        return { ok: true, method: 'click' };
    }
    editor.dispatchEvent(new KeyboardEvent('keydown', { bubbles: true, key: 'Enter', code: 'Enter' }));
    return { ok: true, method: 'enter' };
})()""" % (safe_text, safe_text, safe_text, safe_text)
