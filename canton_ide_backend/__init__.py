"""Backend for the Canton/DAML browser IDE.

Route handlers in server.py stay thin; the real work lives here:
- per-request workspace lifecycle + stale workspace sweeping
- bounded execution of the external toolchain (dpm)
- per-client admission control

Security note:
Session IDs are unguessable UUID4 values and double as workspace directory
names. Never echo filesystem paths or raw OS errors back to the browser.
"""
