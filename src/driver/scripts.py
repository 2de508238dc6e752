"""JavaScript snippets for coupled-viz DOM interaction.

Single source of truth for the JS code injected via Selenium
``execute_script()`` to observe the target's verify hooks, trigger
picks, sample render statistics and manage the audio input.  The
driver imports from here; nothing else builds JS strings.

The target is treated as gray-box: it exposes ``window.__nw_verify``
(state and actions) and ``window.__projectm_verify`` (render and
audio analysis) when served with ``NW_VERIFY=1``.
"""

# ---------------------------------------------------------------------------
# Element selectors
# ---------------------------------------------------------------------------

CANVAS_SELECTOR = "#viz-canvas"
NEXT_BUTTON_SELECTOR = "#preset-next"
STATUS_SELECTOR = "#preset-status"
AUTO_TOGGLE_SELECTOR = "#preset-auto-toggle"
AUDIO_FILE_SELECTOR = "#audio-file"
AUDIO_VOLUME_SELECTOR = "#audio-volume"
AUDIO_TOGGLE_SELECTOR = "#audio-toggle"

#: localStorage key holding the seeded pick order.
SHUFFLE_STATE_KEY = "nw.coupledPairs.shuffleState.v0"

# ---------------------------------------------------------------------------
# Page setup
# ---------------------------------------------------------------------------

# Counts uncaught page errors and console.error calls since load.
# Installed before page scripts run when the browser supports it,
# otherwise right after navigation.
INSTALL_ERROR_HOOKS_JS = """
(function() {
    if (window.__nw_eval_errors) { return; }
    var counts = {page: 0, console: 0};
    window.__nw_eval_errors = counts;
    window.addEventListener('error', function() { counts.page += 1; });
    window.addEventListener('unhandledrejection', function() { counts.page += 1; });
    var origError = console.error;
    console.error = function() {
        counts.console += 1;
        return origError.apply(console, arguments);
    };
    window.__nw_verify = window.__nw_verify || {};
    window.__nw_verify.forcePresetGateOpen = true;
    window.__nw_verify.disableAutoAudio = true;
})();
"""

READ_ERROR_COUNTS_JS = """
var c = window.__nw_eval_errors;
if (!c) { return null; }
return {page: c.page, console: c.console};
"""

# Re-asserts verify flags (bootstrap may replace the object) and turns
# the automatic preset cycle off.  Idempotent.
SET_FLAGS_JS = """
return (function() {
    window.__nw_verify = window.__nw_verify || {};
    window.__nw_verify.forcePresetGateOpen = true;
    window.__nw_verify.disableAutoAudio = true;
    var el = document.querySelector('#preset-auto-toggle');
    var toggled = false;
    if (el instanceof HTMLInputElement && el.checked) {
        el.checked = false;
        el.dispatchEvent(new Event('change', {bubbles: true}));
        toggled = true;
    }
    return {autoToggleCleared: toggled};
})();
"""

# ---------------------------------------------------------------------------
# State observation
# ---------------------------------------------------------------------------

SNAPSHOT_JS = """
return (function() {
    var toNum = function(x) {
        if (x === null || x === undefined || typeof x === 'boolean') { return null; }
        var n = Number(x);
        return isFinite(n) ? n : null;
    };
    var verify = window.__nw_verify || null;
    var getState = verify && typeof verify.getVerifyState === 'function'
        ? verify.getVerifyState : null;
    var s = null;
    try { s = getState ? getState() : null; } catch (e) { s = null; }
    var coupled = (s && s.coupled) || null;
    var pick = (coupled && coupled.lastPick) || null;
    var presetIds = (s && s.presetIds) || null;
    var pm = window.__projectm_verify || {};
    var perPm = pm.perPm || {};
    var fg = perPm.fg || {};
    var bg = perPm.bg || {};
    var btn = document.querySelector('#preset-next');
    var status = document.querySelector('#preset-status');
    var statusText = status ? String(status.textContent || '').trim() : null;

    return {
        ready: !!document.querySelector('#viz-canvas') && !!btn,
        hooksReady: !!getState && (verify.ready === undefined || verify.ready === true),
        pack: coupled && typeof coupled.pack === 'string' ? coupled.pack : null,
        packEnabled: coupled ? !!coupled.enabled : null,
        actionEnabled: btn instanceof HTMLButtonElement ? !btn.disabled : null,
        lastActionTimeMs: pick ? toNum(pick.timeMs) : null,
        lastPair: pick ? toNum(pick.pair) : null,
        presetFgId: presetIds && typeof presetIds.fg === 'string' ? presetIds.fg : null,
        presetBgId: presetIds && typeof presetIds.bg === 'string' ? presetIds.bg : null,
        statusText: statusText || null,
        audioRms: toNum(pm.lastAudioRms),
        audioPeak: toNum(pm.lastAudioPeak),
        warpDiff: pick ? toNum(pick.warpDiff) : null,
        cxDiff: pick ? toNum(pick.cxDiff) : null,
        quality01: pick ? toNum(pick.quality01) : null,
        intensity01: pick ? toNum(pick.intensity01) : null,
        pmAvgLumaFg: toNum(fg.avgLuma),
        pmAvgLumaBg: toNum(bg.avgLuma)
    };
})();
"""

# One raw read of per-layer render statistics.
READ_TELEMETRY_JS = """
return (function() {
    var v = window.__projectm_verify || {};
    var perPm = v.perPm || {};
    var fg = perPm.fg || {};
    var bg = perPm.bg || {};
    var toNum = function(x) {
        if (x === null || x === undefined) { return null; }
        var n = Number(x);
        return isFinite(n) ? n : null;
    };
    var pick = function(a, b) { return (a === undefined || a === null) ? b : a; };
    return {
        fgLuma: toNum(pick(fg.avgLuma, v.avgLuma)),
        bgLuma: toNum(bg.avgLuma),
        fgColor: {
            r: toNum(pick(fg.avgColorR, v.avgColorR)),
            g: toNum(pick(fg.avgColorG, v.avgColorG)),
            b: toNum(pick(fg.avgColorB, v.avgColorB))
        },
        bgColor: {r: toNum(bg.avgColorR), g: toNum(bg.avgColorG), b: toNum(bg.avgColorB)}
    };
})();
"""

# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

# arguments[0]: pack id.  Resolves to the hook's return value, or null
# when the hook is missing.
INIT_PACK_JS = """
var pack = String(arguments[0] || '');
var done = arguments[arguments.length - 1];
var a = (window.__nw_verify && window.__nw_verify.actions) || null;
var fn = a && typeof a.coupledInit === 'function' ? a.coupledInit : null;
if (!fn) { done(null); return; }
Promise.resolve()
    .then(function() { return fn('eval:' + pack); })
    .then(function(r) { done(r === undefined ? true : r); },
          function(e) { done({error: String((e && e.message) || e)}); });
"""

# Same path as a human click: the hook when present, else the button.
ACT_NEXT_JS = """
var a = (window.__nw_verify && window.__nw_verify.actions) || null;
var fn = a && typeof a.coupledNext === 'function' ? a.coupledNext : null;
if (fn) {
    try { void fn('eval:iter'); return 'hook'; } catch (e) { }
}
var el = document.querySelector('#preset-next');
if (el instanceof HTMLButtonElement) { el.click(); return 'click'; }
return null;
"""

# arguments[0]: JSON string of the shuffle state.
SEED_ORDER_JS = """
localStorage.setItem('nw.coupledPairs.shuffleState.v0', arguments[0]);
return true;
"""

# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------

# Volume to 100 and press play if the toggle still offers it.
START_AUDIO_JS = """
return (function() {
    var vol = document.querySelector('#audio-volume');
    if (vol instanceof HTMLInputElement) {
        vol.value = '100';
        vol.dispatchEvent(new Event('input', {bubbles: true}));
        vol.dispatchEvent(new Event('change', {bubbles: true}));
    }
    var btn = document.querySelector('#audio-toggle');
    if (!(btn instanceof HTMLButtonElement) || btn.disabled) { return 'not-ready'; }
    var label = String(btn.textContent || '').toLowerCase();
    if (label.indexOf('play') >= 0) { btn.click(); return 'started'; }
    return 'playing';
})();
"""

READ_AUDIO_LEVEL_JS = """
var pm = window.__projectm_verify || {};
var rms = Number(pm.lastAudioRms);
var peak = Number(pm.lastAudioPeak);
return {rms: isFinite(rms) ? rms : null, peak: isFinite(peak) ? peak : null};
"""

# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------

# Vendor and renderer of a fresh WebGL context, unmasked when the debug
# extension is available.  A software fallback reports "SwiftShader".
WEBGL_RENDERER_JS = """
try {
    var c = document.createElement('canvas');
    var gl = c.getContext('webgl2', {preserveDrawingBuffer: false})
        || c.getContext('webgl', {preserveDrawingBuffer: false});
    if (!gl) { return {ok: false, error: 'no-webgl'}; }
    var ext = gl.getExtension && gl.getExtension('WEBGL_debug_renderer_info');
    var vendor = ext ? gl.getParameter(ext.UNMASKED_VENDOR_WEBGL) : gl.getParameter(gl.VENDOR);
    var renderer = ext ? gl.getParameter(ext.UNMASKED_RENDERER_WEBGL) : gl.getParameter(gl.RENDERER);
    return {ok: true, vendor: String(vendor || ''), renderer: String(renderer || '')};
} catch (e) {
    return {ok: false, error: String((e && e.message) || e || '')};
}
"""
