# memifkit

A slave-side client for the shared-memory packet interface (memif). It comes
with two small command-line tools that use it to exchange Ethernet frames with
a memif master, such as a software router.

It is designed for Linux. Shared regions are memory file descriptors, and they
are passed to the master over a Unix `SOCK_SEQPACKET` control socket.

## Install

    pip install .

To run the tests:

    pip install .[test]
    pytest

## Tools

Both tools run until they are interrupted with Ctrl-C. Each one accepts these
options:

- `--socket PATH`: the control socket. The default is `/run/vpp/memif.sock`.
- `--id N`: the memif interface id.
- `--mac ADDR`: the MAC address to send from. The default is
  `01:02:03:04:05:06`.
- `--burst N`: how many buffers to receive per burst. The default is 32.

### memif-echo-client

    memif-echo-client

This tool connects as interface 0 by default. It answers these requests:

- ARP requests, with an ARP reply.
- ICMP echo requests, with an echo reply.
- ICMP echo requests wrapped in GENEVE, with an echo reply that is wrapped in
  GENEVE with VNI 42.

For any other frame it prints `Unknown`.

### memif-echo-sender

    memif-echo-sender

This tool connects as interface 1 by default. It keeps sending
GENEVE-encapsulated ICMP echo requests. The outer path runs from 198.51.100.2
to 192.0.2.2 and the inner path from 192.168.0.2 to 192.168.0.1. Each request
carries a timestamp.

When an echo reply arrives and more than a second has passed since the last
report, it prints `Packet count: N`. N is the number of requests sent since
that report. It also answers ARP requests that reach it. If no transmit buffer
is free, it waits a second before it tries again.

## Library

```python
from memifkit.connection import connect
from memifkit.packets import decode_frame

with connect("/run/vpp/memif.sock", 0) as conn:
    conn.refill_queue(0, 65535, 0)
    for buf in conn.rx_burst(0, 32):
        frame = decode_frame(bytes(buf.data[: buf.length]))
        ...
```

The package has these modules:

- `memifkit.messages`: control-channel messages (`Hello`, `Init`,
  `AddRegion`, `AddRing`, `Connect`, `Connected`, `Disconnect`, `Ack`).
  `encode_message` pads each message to 128 bytes, and `decode_message` reads
  one back.
- `memifkit.layout`: `MemifArgs`, `Descriptor`, `Region`, `Ring`,
  `ring_size_bytes` and `create_region`. They describe the ring and descriptor
  layout inside the shared regions.
- `memifkit.connection`: `connect` performs the slave handshake and returns a
  `MemifConnection`. The connection provides `buffer_alloc`, `tx_burst`,
  `rx_burst` and `refill_queue`, and it works as a context manager.
- `memifkit.packets`: a minimal codec for Ethernet, ARP, IPv4, UDP, GENEVE and
  ICMP echo. Layers stack into a `Frame` with `/`. `decode_frame` and
  `encode_layers` convert to and from bytes, and lengths and checksums are
  filled in on encode.
- `memifkit.echo_client` and `memifkit.echo_sender`: the two tools. Their
  helpers `make_reply`, `handle_packets`, `transmit`, `build_request`,
  `SerializableInstant` and `RateCounter` can also be used on their own.

## What it does not do

- It has no master role. `connect` only joins a master that is already
  listening, and nothing here listens for slaves.
- Receiving works by polling. The interrupt descriptors are passed to the
  master, but the package never waits on them.
- The handshake always uses one ring in each direction, rings of 1024 slots
  and 2048-byte buffers. It sends no secret.