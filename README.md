# camkit

Building blocks for a camera capture pipeline: video encoders, stream
outputs and still-image writers. They work on raw frame buffers (YUV420,
YUYV, RGB and Bayer) that a `StreamInfo` describes.

## Installation

```
pip install camkit
```

To run the test suite:

```
pip install camkit[test]
pytest
```

## Options and stream descriptions

`camkit.options` holds the following:

- `PixelFormat`, the pixel formats the package knows. `PixelFormat.parse(name)`
  looks one up by name and ignores case.
- `Platform`, which is `VC4`, `PISP` or `UNKNOWN`.
- `StreamInfo`, which gives width, height, stride, pixel format and colour space.
- `VideoOptions`, the settings for encoding and output.
- `StillOptions`, the settings for saving stills: quality, restart interval,
  thumbnail size and quality, and extra EXIF items.

## Video encoders

- `camkit.encoders.create_encoder(options, info)` builds the encoder named by
  `options.codec`, matching the name without regard to case:
  - `yuv420` gives a `NullEncoder`.
  - `mjpeg` gives an `MjpegEncoder`.
  - `h264` and `libav` work only when an encoder with that name has been
    registered.
  - Any other codec raises `RuntimeError`.
- `camkit.null_encoder.NullEncoder` hands each frame back unchanged, as a
  keyframe, from a worker thread.
- `camkit.mjpeg_encoder.MjpegEncoder` encodes each YUV420 or YUYV frame as a
  JPEG on four worker threads. It delivers the frames in the order they came in.
- `camkit.encoder.Encoder` is the abstract base class. Use
  `camkit.encoder.get_factory()` and `register_encoder(name, create_func)` to
  add encoders of your own.

Every encoder has two callback attributes:

- `input_done_callback()` is called when the encoder has finished with an
  input frame.
- `output_ready_callback(data, timestamp_us, keyframe)` receives each encoded
  buffer.

Encoders are context managers. `close()` delivers the frames still queued and
stops the threads. It also raises any error that a callback or an encode raised.

## Outputs

- `camkit.output.Output` is the base class. It discards buffers. It does the
  following:
  - pauses and resumes with `signal()`; after a resume it waits for a keyframe
    and keeps the timestamps continuous;
  - writes a timestamp file (`save_pts`);
  - writes per-frame metadata as `txt` or `json` (`metadata`,
    `metadata_format`). Pass the metadata in with `metadata_ready()`.
- `camkit.file_output.FileOutput` writes to a file, or to stdout when the
  output is `"-"`. When `output` holds a `%` pattern such as `clip%04d.h264`,
  it can start a new file:
  - on a keyframe once `segment` milliseconds have passed;
  - on each restart when `split` is set.

  `wrap` limits the file counter.
- `camkit.circular_output.CircularOutput` keeps the most recent frames in a
  ring buffer of `circular` megabytes. On `close()` it writes them out,
  starting at the first keyframe it still holds. `CircularBuffer` is the byte
  ring it uses.

All outputs are context managers. `Output.output_ready(mem, timestamp_us, keyframe)`
has the same signature as an encoder's `output_ready_callback`.

## Still images

Each writer takes the image planes, a `StreamInfo`, a file name (`"-"` for
stdout) and a `StillOptions`. The DNG and JPEG writers also take a metadata
mapping and a camera model name.

| Function | Input | Result |
| --- | --- | --- |
| `camkit.bmp.bmp_save` | RGB888 | 24-bit BMP |
| `camkit.png.png_save` | BGR888 | PNG |
| `camkit.yuv.yuv_save` | YUV420 or YUYV; RGB888, BGR888, RGB161616 or BGR161616 | planar YUV420 (`encoding="yuv420"`); packed rows (`rgb24` / `rgb48`) |
| `camkit.dng.dng_save` | 10-, 12- and 16-bit Bayer, packed, unpacked and PiSP-compressed | DNG with a small greyscale thumbnail |
| `camkit.jpeg.jpeg_save` | YUV420 or YUYV | JPEG with EXIF data and an optional thumbnail |

The writers read these metadata keys:

- `dng_save` uses `SensorBlackLevels`, `ExposureTime`, `AnalogueGain`,
  `ColourGains`, `ColourCorrectionMatrix` and `LensPosition`.
- `jpeg_save` uses `ExposureTime`, `AnalogueGain`, `DigitalGain` and
  `LensPosition`.

Each entry in `StillOptions.exif` adds an EXIF item of the form
`"IFD.Tag=value"`, for example `"IFD0.Artist=someone"` or
`"EXIF.ExposureBiasValue=-1/3"`. The IFD names are `IFD0`, `IFD1`, `EXIF`,
`EINT` and `GPS`. Tags the package does not know are skipped with a warning.

## Example

```python
from camkit.encoders import create_encoder
from camkit.file_output import FileOutput
from camkit.options import PixelFormat, StreamInfo, VideoOptions

options = VideoOptions(codec="mjpeg", output="video.mjpeg")
info = StreamInfo(width=640, height=480, stride=640, pixel_format=PixelFormat.YUV420)
frame = bytes(640 * 480 * 3 // 2)

with FileOutput(options) as output, create_encoder(options, info) as encoder:
    encoder.input_done_callback = lambda: None
    encoder.output_ready_callback = output.output_ready
    encoder.encode_buffer(frame, info, timestamp_us=0)
```

## What this package does not do

- It has no command-line program and no camera capture. You supply the frames.
- It has no H.264 or libav encoder. `h264` and `libav` codecs work only with
  encoders that you register yourself.
- It has no network output and no function that picks an output from the
  options. Construct `FileOutput`, `CircularOutput` or `Output` directly.