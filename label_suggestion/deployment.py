"""
Deployment code generation for DTW suggestion models.

Renders the prototype set into a standalone streaming SPRING matcher for a
microcontroller, so a model trained on labeled recordings can detect the
same classes live on the device.

Supported platforms:
- arduino: C++ sketch; sensor reads go in readSample()
- microbit: MicroPython script reading the accelerometer

Prototypes are downsampled to at most max_prototype_length points (and the
device sample rate scaled by the same factor) to fit device memory.
"""

import logging
from typing import Sequence

import numpy as np

from .labels import ReferenceLabel

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = ('arduino', 'microbit')


def downsample_series(series: np.ndarray, factor: float) -> np.ndarray:
    """Linearly resample a (length, dim) series to round(length * factor) points (>= 2)."""
    series = np.asarray(series, dtype=float)
    length = max(2, int(round(len(series) * factor)))
    source = np.linspace(0.0, 1.0, len(series))
    target = np.linspace(0.0, 1.0, length)
    return np.stack([np.interp(target, source, series[:, d]) for d in range(series.shape[1])], axis=1)


def _prepare(references: Sequence[ReferenceLabel], sample_rate: float, max_prototype_length: int):
    usable = [ref for ref in references if ref.variance is not None]
    if not usable:
        raise ValueError("No usable references to deploy")

    longest = max(ref.length for ref in usable)
    factor = min(1.0, max_prototype_length / longest)
    series = [downsample_series(ref.series, factor) for ref in usable]
    # Costs scale with the number of aligned points
    variances = [ref.variance * len(s) / ref.length for ref, s in zip(usable, series)]
    return usable, series, variances, sample_rate * factor


def _format_float(value: float) -> str:
    return f"{float(value):.6g}"


def _c_matrix(series: np.ndarray) -> str:
    rows = ", ".join("{" + ", ".join(_format_float(v) for v in row) + "}" for row in series)
    return "{" + rows + "}"


def _py_matrix(series: np.ndarray) -> str:
    rows = ", ".join("[" + ", ".join(_format_float(v) for v in row) + "]" for row in series)
    return "[" + rows + "]"


def generate_arduino_code(
    sample_rate: float,
    max_prototype_length: int,
    references: Sequence[ReferenceLabel],
    confidence_threshold: float = 0.5
) -> str:
    """C++ sketch running streaming SPRING over the prototypes."""
    usable, series, variances, device_rate = _prepare(references, sample_rate, max_prototype_length)
    dim = series[0].shape[1]
    max_length = max(len(s) for s in series)

    ref_arrays = "\n".join(
        f"const float REF_{r}[{len(s)}][DIM] = {_c_matrix(s)};"
        for r, s in enumerate(series)
    )
    ref_pointers = ", ".join(f"&REF_{r}[0][0]" for r in range(len(series)))
    class_names = ", ".join('"' + ref.class_name.replace('"', '\\"') + '"' for ref in usable)

    return f"""// DTW label matcher: {len(usable)} prototypes, {dim} dimensions, {device_rate:.4g} samples/s
#include <math.h>

const int NUM_REFERENCES = {len(usable)};
const int DIM = {dim};
const int MAX_LENGTH = {max_length};
const unsigned long SAMPLE_INTERVAL_MS = {max(1, int(round(1000.0 / device_rate)))};
const float CONFIDENCE_THRESHOLD = {_format_float(confidence_threshold)};

{ref_arrays}
const float* REFS[NUM_REFERENCES] = {{{ref_pointers}}};
const int REF_LENGTHS[NUM_REFERENCES] = {{{", ".join(str(len(s)) for s in series)}}};
const float VARIANCES[NUM_REFERENCES] = {{{", ".join(_format_float(v) for v in variances)}}};
const char* CLASS_NAMES[NUM_REFERENCES] = {{{class_names}}};

float costs[NUM_REFERENCES][MAX_LENGTH];
long starts[NUM_REFERENCES][MAX_LENGTH];
float pendingDistance[NUM_REFERENCES];
long pendingStart[NUM_REFERENCES];
long pendingEnd[NUM_REFERENCES];
float thresholds[NUM_REFERENCES];
long position = 0;
unsigned long lastSample = 0;

void readSample(float* sample) {{
  // Replace with sensor reads, one value per dimension
  for (int d = 0; d < DIM; d++) sample[d] = analogRead(d);
}}

float sampleDistance(const float* a, const float* b) {{
  float s = 0;
  for (int d = 0; d < DIM; d++) s += fabs(a[d] - b[d]);
  return s;
}}

void reportMatch(int r) {{
  float v = VARIANCES[r];
  float confidence = v > 0 ? exp(-pendingDistance[r] * pendingDistance[r] / (2 * v * v)) : 1.0;
  Serial.print(CLASS_NAMES[r]); Serial.print(",");
  Serial.print(pendingStart[r]); Serial.print(",");
  Serial.print(pendingEnd[r]); Serial.print(",");
  Serial.println(confidence);
  for (int i = 0; i < REF_LENGTHS[r]; i++) {{
    if (starts[r][i] <= pendingEnd[r]) costs[r][i] = INFINITY;
  }}
  pendingDistance[r] = INFINITY;
}}

void feed(const float* sample) {{
  for (int r = 0; r < NUM_REFERENCES; r++) {{
    int m = REF_LENGTHS[r];
    const float* ref = REFS[r];
    float prevCost = costs[r][0];
    long prevStart = starts[r][0];
    costs[r][0] = sampleDistance(sample, ref);
    starts[r][0] = position;
    for (int i = 1; i < m; i++) {{
      float best = prevCost; long start = prevStart;
      if (costs[r][i] < best) {{ best = costs[r][i]; start = starts[r][i]; }}
      if (costs[r][i - 1] < best) {{ best = costs[r][i - 1]; start = starts[r][i - 1]; }}
      prevCost = costs[r][i]; prevStart = starts[r][i];
      costs[r][i] = sampleDistance(sample, ref + i * DIM) + best;
      starts[r][i] = start;
    }}
    if (pendingDistance[r] <= thresholds[r]) {{
      bool localMinimum = true;
      for (int i = 0; i < m; i++) {{
        if (costs[r][i] < pendingDistance[r] && starts[r][i] <= pendingEnd[r]) {{ localMinimum = false; break; }}
      }}
      if (localMinimum) reportMatch(r);
    }}
    long length = position - starts[r][m - 1] + 1;
    if (costs[r][m - 1] <= thresholds[r] && length >= 0.8 * m && length <= 1.2 * m &&
        costs[r][m - 1] < pendingDistance[r]) {{
      pendingDistance[r] = costs[r][m - 1];
      pendingStart[r] = starts[r][m - 1];
      pendingEnd[r] = position;
    }}
  }}
  position++;
}}

void setup() {{
  Serial.begin(115200);
  for (int r = 0; r < NUM_REFERENCES; r++) {{
    thresholds[r] = sqrt(-2 * log(CONFIDENCE_THRESHOLD)) * VARIANCES[r];
    pendingDistance[r] = INFINITY;
    for (int i = 0; i < MAX_LENGTH; i++) {{ costs[r][i] = INFINITY; starts[r][i] = 0; }}
  }}
}}

void loop() {{
  unsigned long now = millis();
  if (now - lastSample < SAMPLE_INTERVAL_MS) return;
  lastSample = now;
  float sample[DIM];
  readSample(sample);
  feed(sample);
}}
"""


def generate_microbit_code(
    sample_rate: float,
    max_prototype_length: int,
    references: Sequence[ReferenceLabel],
    confidence_threshold: float = 0.5
) -> str:
    """MicroPython script running streaming SPRING on accelerometer samples."""
    usable, series, variances, device_rate = _prepare(references, sample_rate, max_prototype_length)
    dim = series[0].shape[1]

    refs = ",\n    ".join(_py_matrix(s) for s in series)
    class_names = ", ".join(repr(ref.class_name) for ref in usable)

    return f"""# DTW label matcher: {len(usable)} prototypes, {dim} dimensions, {device_rate:.4g} samples/s
from microbit import accelerometer, display, running_time, sleep
import math

DIM = {dim}
SAMPLE_INTERVAL_MS = {max(1, int(round(1000.0 / device_rate)))}
CONFIDENCE_THRESHOLD = {_format_float(confidence_threshold)}
INF = float('inf')

REFS = [
    {refs}
]
VARIANCES = [{", ".join(_format_float(v) for v in variances)}]
CLASS_NAMES = [{class_names}]
THRESHOLDS = [math.sqrt(-2 * math.log(CONFIDENCE_THRESHOLD)) * v for v in VARIANCES]

costs = [[INF] * len(ref) for ref in REFS]
starts = [[0] * len(ref) for ref in REFS]
pending = [[INF, -1, -1] for _ in REFS]
position = 0


def read_sample():
    values = list(accelerometer.get_values())
    return (values + [0] * DIM)[:DIM]


def distance(a, b):
    return sum(abs(x - y) for x, y in zip(a, b))


def report(r):
    d, s, e = pending[r]
    v = VARIANCES[r]
    confidence = math.exp(-d * d / (2 * v * v)) if v > 0 else 1.0
    print(CLASS_NAMES[r], s, e, confidence)
    display.scroll(CLASS_NAMES[r], wait=False)
    for i in range(len(costs[r])):
        if starts[r][i] <= e:
            costs[r][i] = INF
    pending[r] = [INF, -1, -1]


def feed(sample):
    global position
    for r, ref in enumerate(REFS):
        prev_c, prev_s = costs[r], starts[r]
        c = [0.0] * len(ref)
        s = [0] * len(ref)
        c[0] = distance(sample, ref[0])
        s[0] = position
        for i in range(1, len(ref)):
            best, start = prev_c[i - 1], prev_s[i - 1]
            if prev_c[i] < best:
                best, start = prev_c[i], prev_s[i]
            if c[i - 1] < best:
                best, start = c[i - 1], s[i - 1]
            c[i] = distance(sample, ref[i]) + best
            s[i] = start
        costs[r], starts[r] = c, s
        d, ps, pe = pending[r]
        if d <= THRESHOLDS[r] and all(ci >= d or si > pe for ci, si in zip(c, s)):
            report(r)
        length = position - s[-1] + 1
        if c[-1] <= THRESHOLDS[r] and 0.8 * len(ref) <= length <= 1.2 * len(ref) and c[-1] < pending[r][0]:
            pending[r] = [c[-1], s[-1], position]
    position += 1


while True:
    started = running_time()
    feed(read_sample())
    sleep(max(0, SAMPLE_INTERVAL_MS - (running_time() - started)))
"""


def get_deployment_code(
    platform: str,
    sample_rate: float,
    references: Sequence[ReferenceLabel],
    buffer_size: int = 30,
    confidence_threshold: float = 0.5
) -> str:
    """
    Source code of a standalone matcher for a target platform.

    Args:
        platform: 'arduino' or 'microbit'
        sample_rate: Rate the prototypes were built at (samples per second)
        references: Class prototypes (references with variance None are left out)
        buffer_size: Maximum prototype length on the device
        confidence_threshold: Match acceptance likelihood baked into the code

    Raises:
        ValueError: If the platform is unsupported or no reference is usable
    """
    generators = {
        'arduino': generate_arduino_code,
        'microbit': generate_microbit_code,
    }
    if platform not in generators:
        raise ValueError(f"Unsupported platform: {platform} (supported: {', '.join(SUPPORTED_PLATFORMS)})")

    code = generators[platform](sample_rate, buffer_size, references, confidence_threshold)
    logger.info(f"Generated {platform} deployment code ({len(code.splitlines())} lines)")
    return code
