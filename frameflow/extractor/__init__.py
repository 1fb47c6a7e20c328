"""
Frame extraction package.

Streams periodic still frames of a remote video as multipart PNG parts:

- ingest: upstream fetch as offset-annotated chunks, moov moved ahead of mdat
- mp4_boxes: MP4 box scanning and chunk offset rewriting
- demuxer: PyAV pipe-based demuxer reporting one video track and its samples
- timestamps: target timestamp selection and sample match window
- decoder: stateful PyAV decoder adapter producing planar 4:2:0 pictures
- decode_coordinator: feeds the decoder, packages pictures matching a target
- colorspace: planar YUV 4:2:0 to interleaved RGB conversion
- image_encoder: PNG encoding via Pillow
- multipart: boundary generation, part framing and frame packaging
- pipeline: per-request context and the end-to-end async pipeline
"""
