"""Room lifecycle for Photo Roulette.

`session` moves a room through its phases, `scheduler` keeps the one
countdown each room may have, and `scoring` reads points back out of the
guess log. REST views and socket handlers call in here; nothing in this
package emits HTTP responses.
"""
