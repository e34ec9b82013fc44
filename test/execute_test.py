import queue
import unittest
import tempfile

from chaosmongo.execute import execute as execute_module
from chaosmongo.execute.execute import *
from test import patch
from test.fakes import InlineProcess


def record_do_execute(*args, **kwargs):
    q, host, action, config = args
    q.put(Result(return_code=0, stdout=host + '\n', stderr=''))


class ExecuteTests(unittest.TestCase):

    def test_ssh_config(self):
        ssh_config = """Host docker-host
  User ubuntu
  IdentityFile /tmp/docker-host.pem"""
        with tempfile.NamedTemporaryFile(mode='w') as f:
            f.write(ssh_config)
            f.flush()

            executor = FabricExecutor(ssh_config_file=f.name)
            with patch(execute_module, 'Process', InlineProcess), \
                    patch(execute_module, 'Queue', queue.Queue), \
                    patch(FabricExecutor, '_multiprocess_execute_on_host',
                          record_do_execute):
                rtn = executor.execute('docker-host', 'docker ps')
                self.assertEqual(rtn.return_code, 0)
                self.assertEqual(rtn.stdout, 'docker-host\n')

    def test_timeout(self):
        class HungProcess(InlineProcess):
            def start(self):
                pass

            def is_alive(self):
                return True

        executor = FabricExecutor()
        with patch(execute_module, 'Process', HungProcess), \
                patch(execute_module, 'Queue', queue.Queue):
            with self.assertRaises(Exception) as e:
                executor.execute('docker-host', 'docker stop mongo2',
                                 timeout=1)
            self.assertIn("exceeded timeout", str(e.exception))

    def test_collect_connect_kwargs(self):
        self.assertIsNone(FabricExecutor._collect_connect_kwargs(None))
        with tempfile.NamedTemporaryFile() as f:
            self.assertEqual(FabricExecutor._collect_connect_kwargs(f.name),
                             {'key_filename': f.name})
