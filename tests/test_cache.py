import unittest

from s3nav.cache import ListingCache
from s3nav.errors import ErrorKind, StorageError
from s3nav.models import (
    Container,
    Failed,
    Loaded,
    Loading,
    NotLoaded,
    ObjectEntry,
    SubContainer,
)

BUCKET = Container(bucket="bucket-a")


def _objects(*names: str) -> tuple[ObjectEntry, ...]:
    return tuple(ObjectEntry(name=name, bucket="bucket-a", key=name) for name in names)


class TestListingCache(unittest.TestCase):
    def test_unknown_container_is_not_loaded(self) -> None:
        cache = ListingCache()
        self.assertIsInstance(cache.get(BUCKET), NotLoaded)
        self.assertNotIn(BUCKET, cache)

    def test_begin_load_marks_loading(self) -> None:
        cache = ListingCache()
        token = cache.begin_load(BUCKET)
        self.assertEqual(cache.get(BUCKET), Loading(token))
        self.assertTrue(cache.is_in_flight(BUCKET))
        self.assertTrue(cache.is_pending(BUCKET, token))

    def test_stale_token_is_discarded_out_of_order(self) -> None:
        cache = ListingCache()
        first = cache.begin_load(BUCKET)
        second = cache.begin_load(BUCKET)
        self.assertGreater(second, first)

        self.assertTrue(cache.append_page(BUCKET, second, _objects("new.txt"), None, False))
        self.assertFalse(cache.append_page(BUCKET, first, _objects("old.txt"), None, False))
        self.assertFalse(
            cache.mark_failed(BUCKET, first, StorageError(ErrorKind.TRANSIENT, "late"))
        )

        state = cache.get(BUCKET)
        self.assertIsInstance(state, Loaded)
        self.assertEqual([entry.name for entry in state.items], ["new.txt"])

    def test_stale_failure_is_discarded(self) -> None:
        cache = ListingCache()
        first = cache.begin_load(BUCKET)
        second = cache.begin_load(BUCKET)
        self.assertFalse(
            cache.mark_failed(BUCKET, first, StorageError(ErrorKind.NOT_FOUND, "gone"))
        )
        self.assertEqual(cache.get(BUCKET), Loading(second))

    def test_duplicate_delivery_is_a_no_op(self) -> None:
        cache = ListingCache()
        token = cache.begin_load(BUCKET)
        page = _objects("a.txt", "b.txt")
        self.assertTrue(cache.append_page(BUCKET, token, page, None, False))
        self.assertFalse(cache.append_page(BUCKET, token, page, None, False))
        self.assertEqual(len(cache.get(BUCKET).items), 2)

    def test_pages_append_in_order_and_replay_identically(self) -> None:
        pages = [
            (_objects("a", "b"), "t1", True),
            (_objects("c"), "t2", True),
            (_objects("d", "e"), None, False),
        ]

        def replay() -> Loaded:
            cache = ListingCache()
            token = cache.begin_load(BUCKET)
            for index, (items, next_token, has_more) in enumerate(pages):
                if index:
                    token = cache.begin_load_more(BUCKET)
                cache.append_page(BUCKET, token, items, next_token, has_more)
            return cache.get(BUCKET)

        first = replay()
        second = replay()
        self.assertEqual(first, second)
        self.assertEqual([entry.name for entry in first.items], ["a", "b", "c", "d", "e"])
        self.assertFalse(first.has_more)
        self.assertIsNone(first.next_token)

    def test_begin_load_more_requires_more_pages(self) -> None:
        cache = ListingCache()
        with self.assertRaises(ValueError):
            cache.begin_load_more(BUCKET)
        token = cache.begin_load(BUCKET)
        with self.assertRaises(ValueError):
            cache.begin_load_more(BUCKET)
        cache.append_page(BUCKET, token, _objects("a"), None, False)
        with self.assertRaises(ValueError):
            cache.begin_load_more(BUCKET)

    def test_begin_load_more_rejects_second_request(self) -> None:
        cache = ListingCache()
        token = cache.begin_load(BUCKET)
        cache.append_page(BUCKET, token, _objects("a"), "next", True)
        cache.begin_load_more(BUCKET)
        with self.assertRaises(ValueError):
            cache.begin_load_more(BUCKET)

    def test_failed_load_more_keeps_items(self) -> None:
        cache = ListingCache()
        token = cache.begin_load(BUCKET)
        cache.append_page(BUCKET, token, _objects("a", "b"), "next", True)
        more = cache.begin_load_more(BUCKET)
        error = StorageError(ErrorKind.ACCESS_DENIED, "denied")
        self.assertTrue(cache.mark_failed(BUCKET, more, error))

        state = cache.get(BUCKET)
        self.assertIsInstance(state, Failed)
        self.assertEqual(state.error, error)
        self.assertEqual([entry.name for entry in state.items], ["a", "b"])

    def test_invalidate_makes_late_results_stale(self) -> None:
        cache = ListingCache()
        token = cache.begin_load(BUCKET)
        cache.invalidate(BUCKET)
        self.assertIsInstance(cache.get(BUCKET), NotLoaded)
        self.assertFalse(cache.append_page(BUCKET, token, _objects("a"), None, False))
        self.assertNotIn(BUCKET, cache)

    def test_abandon_first_page_returns_to_not_loaded(self) -> None:
        cache = ListingCache()
        token = cache.begin_load(BUCKET)
        self.assertTrue(cache.abandon(BUCKET))
        self.assertIsInstance(cache.get(BUCKET), NotLoaded)
        self.assertFalse(cache.append_page(BUCKET, token, _objects("a"), None, False))

    def test_abandon_load_more_keeps_loaded_pages(self) -> None:
        cache = ListingCache()
        token = cache.begin_load(BUCKET)
        cache.append_page(BUCKET, token, _objects("a"), "next", True)
        more = cache.begin_load_more(BUCKET)
        self.assertTrue(cache.abandon(BUCKET))
        self.assertFalse(cache.append_page(BUCKET, more, _objects("b"), None, False))

        state = cache.get(BUCKET)
        self.assertEqual([entry.name for entry in state.items], ["a"])
        self.assertTrue(state.has_more)
        self.assertFalse(cache.is_in_flight(BUCKET))

    def test_abandon_without_request_is_false(self) -> None:
        cache = ListingCache()
        self.assertFalse(cache.abandon(BUCKET))
        token = cache.begin_load(BUCKET)
        cache.append_page(BUCKET, token, (), None, False)
        self.assertFalse(cache.abandon(BUCKET))

    def test_containers_are_independent(self) -> None:
        cache = ListingCache()
        other = Container(bucket="bucket-a", prefix="logs/")
        bucket_token = cache.begin_load(BUCKET)
        other_token = cache.begin_load(other)
        cache.append_page(
            other,
            other_token,
            (SubContainer(name="2024", bucket="bucket-a", prefix="logs/2024/"),),
            None,
            False,
        )
        self.assertEqual(cache.get(BUCKET), Loading(bucket_token))
        self.assertFalse(cache.append_page(other, bucket_token, (), None, False))
        self.assertEqual(len(cache), 2)

    def test_clear_forgets_everything(self) -> None:
        cache = ListingCache()
        cache.begin_load(BUCKET)
        cache.clear()
        self.assertEqual(len(cache), 0)


if __name__ == "__main__":
    unittest.main()
